from opportunity_monitor.config import RiskConfig
from opportunity_monitor.models import CandidateOpportunity, MarketAnalysis, MarketSnapshot, OrderBookDepth
from opportunity_monitor.risk import RiskFilter


def _analysis(volatility: float = 0.0, liquidity: float = 5_000_000.0, condition: float = 1.0) -> MarketAnalysis:
    return MarketAnalysis(
        symbol="BTCUSDT",
        timestamp_ms=0,
        price=100.0,
        atr=1.0,
        atr_pct=0.01,
        ema_fast=None,
        ema_slow=None,
        trend="UP",
        signal="CHOP",
        vol_z=0.0,
        range_pos=0.5,
        ret1=None,
        swing_high=None,
        swing_low=None,
        amp_pct=None,
        regime="NORMAL",
        volatility=volatility,
        liquidity=liquidity,
        market_condition=condition,
    )


def _cand(net_rr: float = 3.0) -> CandidateOpportunity:
    return CandidateOpportunity(
        id="c1",
        symbol="BTCUSDT",
        strategy="TREND_FOLLOW",
        direction="LONG",
        entry=100.0,
        stop_loss=99.0,
        take_profit1=103.0,
        take_profit2=105.0,
        net_rr=net_rr,
        gross_rr=net_rr,
        confidence="MEDIUM",
        trigger="test",
        timestamp_ms=0,
        distance_to_entry=0.0,
        reference_price=100.0,
        atr_pct=0.01,
    )


def test_all_checks_pass_gives_full_score():
    a = RiskFilter(RiskConfig()).assess(_cand(3.0), _analysis())
    assert a.acceptable
    assert a.score == 100
    assert a.failed_checks == []
    assert all(0.0 <= v <= 1.0 for v in a.factors.values())


def test_high_score_with_failed_market_condition_is_rejected():
    a = RiskFilter(RiskConfig()).assess(_cand(3.0), _analysis(condition=0.4))
    assert a.score == 91
    assert not a.acceptable
    assert a.failed_checks == ["market_condition"]


def test_low_liquidity_rejects_despite_high_score():
    a = RiskFilter(RiskConfig()).assess(_cand(3.0), _analysis(liquidity=999_999.0))
    assert a.score == 80
    assert not a.acceptable
    assert a.failed_checks == ["liquidity"]
    assert a.factors["liquidity"] == 0.0


def test_each_check_is_independent():
    rf = RiskFilter(RiskConfig())
    assert not rf.assess(_cand(1.99), _analysis()).acceptable
    assert not rf.assess(_cand(3.0), _analysis(volatility=0.051)).acceptable
    assert rf.assess(_cand(2.0), _analysis(volatility=0.05, liquidity=1_000_000.0, condition=0.5)).acceptable


def test_market_condition_penalties():
    rf = RiskFilter(RiskConfig())
    book = OrderBookDepth(bids=((99.99, 5.0),), asks=((100.01, 5.0),))
    clean = MarketSnapshot(symbol="BTCUSDT", timestamp_ms=0, price=100.0, volume=1.0, depth=book)
    assert rf.market_condition(clean) == 1.0

    wide = OrderBookDepth(bids=((99.0, 5.0),), asks=((101.0, 5.0),))
    stressed = MarketSnapshot(symbol="BTCUSDT", timestamp_ms=0, price=100.0, volume=1.0, depth=wide, funding_rate=0.002)
    assert abs(rf.market_condition(stressed) - 0.4) < 1e-9

    empty = MarketSnapshot(symbol="BTCUSDT", timestamp_ms=0, price=100.0, volume=1.0)
    assert abs(rf.market_condition(empty) - 0.8) < 1e-9

    synthetic = MarketSnapshot(symbol="BTCUSDT", timestamp_ms=0, price=100.0, volume=0.0, synthetic=True)
    assert abs(rf.market_condition(synthetic) - 0.3) < 1e-9


def test_detect_abnormal_market():
    rf = RiskFilter(RiskConfig())
    assert not rf.detect_abnormal_market(_analysis(volatility=0.02, condition=0.8))
    assert rf.detect_abnormal_market(_analysis(volatility=0.11))
    assert rf.detect_abnormal_market(_analysis(condition=0.2))
    assert not rf.detect_abnormal_market(None)


def test_detect_abnormal_market_fails_closed():
    class Broken:
        @property
        def volatility(self):
            raise RuntimeError("boom")

    assert RiskFilter(RiskConfig()).detect_abnormal_market(Broken())


def test_net_rr_just_under_minimum_is_rejected():
    a = RiskFilter(RiskConfig(min_net_rr=2.0)).assess(_cand(1.997), _analysis())
    assert not a.acceptable
    assert a.failed_checks == ["net_rr"]
    assert a.inputs["net_rr"] == 1.997
