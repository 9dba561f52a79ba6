from __future__ import annotations

import dataclasses
import logging
import time
from typing import Optional

from .config import RiskConfig
from .models import CandidateOpportunity, MarketAnalysis, MarketSnapshot, RiskAssessment

log = logging.getLogger("risk")

WEIGHTS = {"net_rr": 40.0, "volatility": 25.0, "liquidity": 20.0, "market_condition": 15.0}


class RiskFilter:
    """Hard four-factor gate plus an informational 0-100 score.

    The score and the gate can disagree: a candidate may score 85 and still be
    rejected because one factor is below its threshold.
    """

    def __init__(self, cfg: Optional[RiskConfig] = None):
        self.cfg = cfg or RiskConfig()

    def market_condition(self, snapshot: MarketSnapshot) -> float:
        score = 1.0
        spread = snapshot.depth.spread_pct()
        if snapshot.depth.is_empty():
            score -= 0.2
        elif spread is not None and spread > self.cfg.max_spread:
            score -= 0.3
        if abs(snapshot.funding_rate) > self.cfg.max_abs_funding:
            score -= 0.3
        if snapshot.synthetic:
            score -= 0.5
        return min(1.0, max(0.0, round(score, 4)))

    def annotate(self, snapshot: MarketSnapshot, analysis: MarketAnalysis) -> MarketAnalysis:
        return dataclasses.replace(analysis, market_condition=self.market_condition(snapshot))

    def assess(self, candidate: CandidateOpportunity, analysis: MarketAnalysis) -> RiskAssessment:
        net_rr = float(candidate.net_rr or 0.0)
        volatility = float(analysis.volatility)
        liquidity = float(analysis.liquidity)
        condition = float(analysis.market_condition)

        checks = {
            "net_rr": net_rr >= self.cfg.min_net_rr,
            "volatility": volatility <= self.cfg.max_volatility,
            "liquidity": liquidity >= self.cfg.min_liquidity,
            "market_condition": condition >= self.cfg.min_market_condition,
        }

        factors = {
            "net_rr": min(net_rr / 3.0, 1.0) if checks["net_rr"] else 0.0,
            "volatility": (1.0 - volatility / self.cfg.max_volatility) if checks["volatility"] else 0.0,
            "liquidity": min(liquidity / (self.cfg.min_liquidity * 5.0), 1.0) if checks["liquidity"] else 0.0,
            "market_condition": min(1.0, max(0.0, condition)),
        }
        score = int(round(sum(WEIGHTS[k] * min(max(v, 0.0), 1.0) for k, v in factors.items())))

        failed = [k for k, ok in checks.items() if not ok]
        acceptable = not failed
        log.info(
            "risk symbol=%s strategy=%s score=%d acceptable=%s failed=%s",
            candidate.symbol, candidate.strategy, score, acceptable, ",".join(failed) or "-",
        )
        return RiskAssessment(
            opportunity_id=candidate.id,
            score=score,
            acceptable=acceptable,
            factors=factors,
            inputs={
                "net_rr": net_rr,
                "volatility": volatility,
                "liquidity": liquidity,
                "market_condition": condition,
            },
            failed_checks=failed,
            assessed_at_ms=int(time.time() * 1000),
        )

    def detect_abnormal_market(self, analysis: Optional[MarketAnalysis]) -> bool:
        """Coarse circuit breaker. Any failure to evaluate counts as abnormal."""
        try:
            if analysis is None:
                return False
            return (
                analysis.volatility > self.cfg.max_volatility * 2
                or analysis.market_condition < 0.3
            )
        except Exception as e:
            log.error("abnormal_market_check_failed err=%s", e)
            return True
