from opportunity_monitor.cooler import DeduplicationCooler
from opportunity_monitor.models import FIRED, READY, WATCH, CandidateOpportunity, ClassifiedAlert

MINUTE_MS = 60_000
T0 = 1_700_000_000_000


def _alert(level: str, net_rr: float = 3.0, symbol: str = "BTCUSDT", strategy: str = "BREAKOUT",
           distance: float = 0.0, opp_id: str = "a1") -> ClassifiedAlert:
    opp = CandidateOpportunity(
        id=opp_id,
        symbol=symbol,
        strategy=strategy,
        direction="LONG",
        entry=100.0,
        stop_loss=99.0,
        take_profit1=100.0 + net_rr,
        take_profit2=110.0,
        net_rr=net_rr,
        gross_rr=net_rr,
        confidence="MEDIUM",
        trigger="test",
        timestamp_ms=T0,
        distance_to_entry=distance,
        reference_price=100.0,
        atr_pct=0.01,
    )
    return ClassifiedAlert(
        opportunity=opp,
        level=level,
        distance_to_entry=distance,
        atr_pct=0.01,
        minutes_to_trigger=0,
        classified_at_ms=T0,
    )


def test_same_key_twice_within_a_minute_notifies_once():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    alert = _alert(FIRED, net_rr=2.5)
    decisions = [cooler.should_notify(alert, now_ms=T0), cooler.should_notify(alert, now_ms=T0 + 30_000)]
    assert decisions == [True, False]


def test_below_adaptive_threshold_is_suppressed():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    assert not cooler.should_notify(_alert(WATCH, net_rr=2.99), now_ms=T0)
    assert cooler.should_notify(_alert(WATCH, net_rr=3.0), now_ms=T0)
    assert not cooler.should_notify(_alert(READY, net_rr=2.4, strategy="PULLBACK"), now_ms=T0)
    assert cooler.should_notify(_alert(FIRED, net_rr=2.0, strategy="TREND_FOLLOW"), now_ms=T0)


def test_level_upgrade_bypasses_cooldown_and_downgrade_does_not():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    assert cooler.should_notify(_alert(WATCH), now_ms=T0)
    assert cooler.should_notify(_alert(READY), now_ms=T0 + MINUTE_MS)
    assert cooler.should_notify(_alert(FIRED), now_ms=T0 + 2 * MINUTE_MS)
    assert not cooler.should_notify(_alert(WATCH), now_ms=T0 + 3 * MINUTE_MS)
    assert not cooler.should_notify(_alert(FIRED), now_ms=T0 + 4 * MINUTE_MS)


def test_cooldown_expires():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    alert = _alert(FIRED)
    assert cooler.should_notify(alert, now_ms=T0)
    assert not cooler.should_notify(alert, now_ms=T0 + 30 * MINUTE_MS - 1)
    assert cooler.should_notify(alert, now_ms=T0 + 30 * MINUTE_MS)


def test_different_strategies_have_separate_cooldowns():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    assert cooler.should_notify(_alert(FIRED, strategy="BREAKOUT"), now_ms=T0)
    assert cooler.should_notify(_alert(FIRED, strategy="TREND_FOLLOW"), now_ms=T0)
    assert cooler.cooldown_status(now_ms=T0) == {"active": 2, "total": 2}


def test_adaptive_threshold_ratchets_after_fifty_notifications():
    cooler = DeduplicationCooler(cooldown_minutes=1)
    alert = _alert(FIRED, net_rr=4.0)
    for i in range(60):
        assert cooler.should_notify(alert, now_ms=T0 + i * 2 * MINUTE_MS)
    assert cooler.notification_count("BTCUSDT") == 60
    assert abs(cooler.threshold_for("BTCUSDT", FIRED) - 2.2) < 1e-9
    # base wins over a lower floor
    assert cooler.threshold_for("BTCUSDT", WATCH) == 3.0
    assert cooler.threshold_for("ETHUSDT", FIRED) == 2.0

    for i in range(60, 70):
        cooler.should_notify(alert, now_ms=T0 + i * 2 * MINUTE_MS)
    assert abs(cooler.threshold_for("BTCUSDT", FIRED) - 2.42) < 1e-9


def test_adaptive_threshold_is_capped():
    cooler = DeduplicationCooler(cooldown_minutes=1)
    alert = _alert(FIRED, net_rr=10.0)
    for i in range(300):
        cooler.should_notify(alert, now_ms=T0 + i * 2 * MINUTE_MS)
    assert cooler.threshold_for("BTCUSDT", FIRED) == 5.0


def test_sweep_removes_only_expired_entries():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    cooler.should_notify(_alert(FIRED, strategy="BREAKOUT"), now_ms=T0)
    cooler.should_notify(_alert(FIRED, strategy="PULLBACK"), now_ms=T0 + 20 * MINUTE_MS)
    assert cooler.sweep(now_ms=T0 + 31 * MINUTE_MS) == 1
    assert cooler.cooldown_status(now_ms=T0 + 31 * MINUTE_MS) == {"active": 1, "total": 1}


def test_error_fails_closed():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    broken = ClassifiedAlert(
        opportunity=None, level=FIRED, distance_to_entry=0.0, atr_pct=0.01, minutes_to_trigger=0, classified_at_ms=T0,
    )
    assert not cooler.should_notify(broken, now_ms=T0)


def test_merge_keeps_highest_level_per_symbol_cluster():
    alerts = [
        _alert(WATCH, distance=-0.0100, opp_id="w"),
        _alert(READY, distance=-0.0105, opp_id="r"),
        _alert(WATCH, distance=-0.0300, opp_id="far"),
        _alert(FIRED, distance=-0.0100, symbol="ETHUSDT", opp_id="eth"),
    ]
    merged = DeduplicationCooler.merge_similar_signals(alerts)
    assert [a.opportunity_id for a in merged] == ["r", "far", "eth"]


def test_merge_tie_keeps_first_encountered():
    alerts = [
        _alert(READY, distance=0.0100, opp_id="first"),
        _alert(READY, distance=0.0102, opp_id="second"),
    ]
    merged = DeduplicationCooler.merge_similar_signals(alerts)
    assert [a.opportunity_id for a in merged] == ["first"]


def test_fired_threshold_compares_unrounded_net_rr():
    cooler = DeduplicationCooler(cooldown_minutes=30)
    assert not cooler.should_notify(_alert(FIRED, net_rr=1.997), now_ms=T0)
    assert cooler.should_notify(_alert(FIRED, net_rr=2.0), now_ms=T0)
