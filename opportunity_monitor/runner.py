from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any, Dict, List, Optional

from .classifier import AlertClassifier
from .config import Config, ConfigError
from .cooler import DeduplicationCooler
from .dispatcher import NotificationDispatcher
from .fetcher import MarketDataFetcher
from .formatters import format_text, opportunity_event, status_event
from .health import HealthMonitor
from .models import ClassifiedAlert, CycleReport, DataSnapshot, MarketAnalysis, MarketSnapshot
from .notifier.email import build_email_sender
from .notifier.webhook import WebhookBroadcaster
from .notifier.websocket import WebSocketBroadcaster
from .providers.binance import BinanceProvider
from .risk import RiskFilter
from .signals import SignalGenerator
from .snapshots import SnapshotStore, SnapshotStoreError

log = logging.getLogger("runner")

_UNSET = object()


def _now_ms() -> int:
    return int(time.time() * 1000)


class AlertRunner:
    def __init__(
        self,
        cfg: Config,
        *,
        fetcher: Optional[MarketDataFetcher] = None,
        email_sender: Any = _UNSET,
        store: Optional[SnapshotStore] = None,
        broadcasters: Optional[List[Any]] = None,
    ):
        self.cfg = cfg
        self.provider = BinanceProvider(
            base_url=cfg.provider.base_url,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            min_request_spacing_ms=cfg.provider.min_request_spacing_ms,
        )
        self.fetcher = fetcher or MarketDataFetcher(
            self.provider, cfg.provider, mock_fallback=cfg.mock_fallback_enabled()
        )
        self.signals = SignalGenerator(cfg.signals)
        self.risk = RiskFilter(cfg.risk)
        self.classifier = AlertClassifier(cfg.alerts)
        self.cooler = DeduplicationCooler(cfg.alerts.cooldown_minutes)
        self.store = store or SnapshotStore(cfg.snapshots)
        self.health = HealthMonitor()

        sender = build_email_sender(cfg.email) if email_sender is _UNSET else email_sender
        self.dispatcher = NotificationDispatcher(
            sender, cfg.email.recipients, cfg.notifications, app_name=cfg.app.name
        )

        if broadcasters is None:
            self.ws = WebSocketBroadcaster(
                enabled=cfg.websocket.enabled,
                host=cfg.websocket.host,
                port=cfg.websocket.port,
                heartbeat_s=cfg.websocket.heartbeat_s,
            )
            self.webhook = WebhookBroadcaster(
                enabled=cfg.webhook.enabled,
                url=cfg.webhook.url,
                secret=cfg.webhook.secret,
                timeout_s=cfg.webhook.timeout_s,
                headers=cfg.webhook.headers or {},
            )
            broadcasters = [self.ws, self.webhook]
        self.broadcasters = broadcasters

        self._last_alerts: Dict[str, ClassifiedAlert] = {}
        self._stop = asyncio.Event()

    @property
    def symbols(self) -> List[str]:
        return list(self.cfg.monitor.symbols)

    # ---- cycle ----

    async def run_cycle(self, symbols: Optional[List[str]] = None) -> CycleReport:
        symbols = [s.upper() for s in (symbols if symbols is not None else self.symbols)]
        report = CycleReport(started_at_ms=_now_ms(), instruments_attempted=len(symbols))

        snapshots = await self._collect(symbols)
        report.instruments_succeeded = len(snapshots)
        report.synthetic_snapshots = sum(1 for s in snapshots.values() if s.synthetic)
        if snapshots:
            self.health.record_data_update()

        analyses: Dict[str, MarketAnalysis] = {}
        for sym, snap in snapshots.items():
            try:
                analysis = self.signals.analyze(snap)
                if analysis is not None:
                    analyses[sym] = self.risk.annotate(snap, analysis)
            except Exception as e:
                report.stage_errors += 1
                self.health.record_error()
                log.exception("analysis_failed symbol=%s err=%s", sym, e)

        report.abnormal_market = self._abnormal_market(analyses)

        for sym, analysis in analyses.items():
            try:
                await self._process_symbol(snapshots[sym], analysis, report)
            except Exception as e:
                report.stage_errors += 1
                self.health.record_error()
                log.exception("pipeline_failed symbol=%s err=%s", sym, e)

        report.finished_at_ms = _now_ms()
        self.health.record_cycle(report)
        await self._broadcast(status_event(report))
        log.info(
            "cycle_done symbols=%d ok=%d found=%d accepted=%d emitted=%d suppressed=%d upgrades=%d errors=%d synthetic=%d abnormal=%s took_ms=%d",
            report.instruments_attempted,
            report.instruments_succeeded,
            report.opportunities_found,
            report.opportunities_accepted,
            report.alerts_emitted,
            report.alerts_suppressed,
            report.level_upgrades,
            report.stage_errors,
            report.synthetic_snapshots,
            report.abnormal_market,
            report.duration_ms,
        )
        return report

    async def _collect(self, symbols: List[str]) -> Dict[str, MarketSnapshot]:
        out: Dict[str, MarketSnapshot] = {}
        size = max(1, int(self.cfg.monitor.batch_size))
        delay_s = max(0, int(self.cfg.monitor.batch_delay_ms)) / 1000.0

        for i in range(0, len(symbols), size):
            batch = symbols[i:i + size]
            results = await asyncio.gather(*[self.fetcher.fetch(s) for s in batch], return_exceptions=True)
            for sym, res in zip(batch, results):
                if isinstance(res, BaseException):
                    self.health.record_error()
                    log.warning("fetch_failed symbol=%s err=%r", sym, res)
                    continue
                out[sym] = res
            if i + size < len(symbols) and delay_s > 0:
                await asyncio.sleep(delay_s)
        return out

    def _abnormal_market(self, analyses: Dict[str, MarketAnalysis]) -> bool:
        if not self.cfg.risk.abnormal_market_gate or not analyses:
            return False
        ref = self.cfg.risk.reference_symbol.upper()
        if ref not in analyses:
            log.debug("abnormal_market_check_skipped reference=%s reason=no_data", ref)
            return False
        abnormal = self.risk.detect_abnormal_market(analyses[ref])
        if abnormal:
            log.warning("abnormal_market reference=%s notifications=suppressed", ref)
        return abnormal

    async def _process_symbol(self, snap: MarketSnapshot, analysis: MarketAnalysis, report: CycleReport) -> None:
        candidates = self.signals.generate(snap, analysis)
        report.opportunities_found += len(candidates)

        alerts: List[ClassifiedAlert] = []
        scores: Dict[str, int] = {}
        for cand in candidates:
            assessment = self.risk.assess(cand, analysis)
            if not assessment.acceptable:
                continue
            report.opportunities_accepted += 1
            scores[cand.id] = assessment.score
            alerts.append(self.classifier.classify(cand))

        for alert in self.cooler.merge_similar_signals(alerts):
            key = DeduplicationCooler.key_for(alert)
            previous = self._last_alerts.get(key)
            if self.classifier.track_state_change(previous, alert) and previous is not None:
                report.level_upgrades += 1
            self._last_alerts[key] = alert

            if report.abnormal_market:
                report.alerts_suppressed += 1
                continue
            if snap.synthetic and self.cfg.alerts.suppress_synthetic:
                report.alerts_suppressed += 1
                log.debug("alert_suppressed reason=synthetic %s", format_text(alert))
                continue
            if not self.cooler.should_notify(alert):
                report.alerts_suppressed += 1
                continue
            await self._emit(alert, snap, analysis, scores.get(alert.opportunity_id))
            report.alerts_emitted += 1

    async def _emit(
        self,
        alert: ClassifiedAlert,
        snap: MarketSnapshot,
        analysis: MarketAnalysis,
        risk_score: Optional[int],
    ) -> None:
        try:
            snapshot_id = await self.store.save(alert.opportunity, snap, analysis)
            alert = dataclasses.replace(
                alert, opportunity=dataclasses.replace(alert.opportunity, snapshot_id=snapshot_id)
            )
        except SnapshotStoreError as e:
            log.warning("snapshot_save_failed symbol=%s err=%s", alert.symbol, e)

        log.info("alert score=%s %s", risk_score, format_text(alert))
        self.dispatcher.deliver(alert)
        self.health.record_alert()
        await self._broadcast(opportunity_event(alert, risk_score))

    async def _broadcast(self, event: Dict[str, Any]) -> None:
        for b in self.broadcasters:
            try:
                await b.broadcast(event)
            except Exception as e:
                log.warning("broadcast_failed type=%s err=%s", event.get("type"), e)

    # ---- scheduling ----

    async def _tick(self) -> None:
        try:
            await self.run_cycle()
        except Exception as e:
            self.health.record_error()
            log.exception("cycle_failed err=%s", e)

    async def run_maintenance(self) -> Dict[str, int]:
        out = {"cooldowns": 0, "snapshots_by_count": 0, "snapshots_expired": 0}
        out["cooldowns"] = self.cooler.sweep()
        try:
            out["snapshots_by_count"] = await self.store.cleanup_by_count()
            out["snapshots_expired"] = await self.store.cleanup_expired()
        except OSError as e:
            log.warning("maintenance_snapshot_cleanup_failed err=%s", e)
        log.info(
            "maintenance_done cooldowns=%d snapshots_by_count=%d snapshots_expired=%d",
            out["cooldowns"], out["snapshots_by_count"], out["snapshots_expired"],
        )
        return out

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for b in self.broadcasters:
            start = getattr(b, "start", None)
            if start is not None:
                await start()

        log.info(
            "monitor_start symbols=%d interval=%ss env=%s mock_fallback=%s email=%s",
            len(self.symbols),
            self.cfg.monitor.interval_s,
            self.cfg.app.environment,
            self.cfg.mock_fallback_enabled(),
            self.dispatcher.enabled(),
        )

        sweep_s = float(self.cfg.alerts.sweep_interval_hours) * 3600.0
        next_sweep = loop.time() + sweep_s
        next_tick = loop.time()
        while not self._stop.is_set():
            await self._tick()

            if loop.time() >= next_sweep:
                await self.run_maintenance()
                next_sweep = loop.time() + sweep_s

            interval = float(self.cfg.monitor.interval_s)
            next_tick += interval
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                log.warning("tick_skipped reason=cycle_overran missed=%d", missed)
                next_tick += missed * interval
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, next_tick - now))
            except asyncio.TimeoutError:
                pass

    def request_stop(self) -> None:
        """Stop scheduling new ticks; safe to call from a signal handler."""
        self._stop.set()

    async def stop(self) -> None:
        self._stop.set()
        await self.dispatcher.close(self.cfg.notifications.drain_timeout_s)
        await self.store.wait_background()
        for b in self.broadcasters:
            close = getattr(b, "close", None)
            if close is not None:
                await close()
        await self.provider.close()
        log.info("monitor_stopped")

    # ---- operational surface ----

    async def status(self) -> Dict[str, Any]:
        snap_stats = await self.store.stats()
        return {
            "health": self.health.report(),
            "cooldowns": self.cooler.cooldown_status(),
            "notifications": self.dispatcher.queue_status(),
            "snapshots": dataclasses.asdict(snap_stats),
            "fetcher": self.fetcher.stats(),
            "symbols": self.symbols,
            "interval_s": self.cfg.monitor.interval_s,
        }

    def set_symbols(self, symbols: List[str]) -> List[str]:
        if not isinstance(symbols, (list, tuple)):
            raise ConfigError("symbols must be a list")
        cleaned = [str(s).strip().upper() for s in symbols if str(s).strip()]
        if not cleaned:
            raise ConfigError("at least one symbol must be configured for monitoring")
        self.cfg.monitor.symbols = cleaned
        log.info("symbols_updated count=%d symbols=%s", len(cleaned), ",".join(cleaned))
        return cleaned

    def set_interval(self, seconds: int) -> int:
        try:
            value = int(seconds)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid interval: {seconds!r}") from e
        if value < 1:
            raise ConfigError("monitor.interval_s must be at least 1 second")
        self.cfg.monitor.interval_s = value
        log.info("interval_updated interval_s=%d", value)
        return value

    async def get_snapshot(self, snapshot_id: str) -> Optional[DataSnapshot]:
        return await self.store.get(snapshot_id)

    async def list_snapshots(self, limit: int = 10) -> List[DataSnapshot]:
        return await self.store.list(limit)

    async def send_test_notification(self) -> bool:
        return await self.dispatcher.send_test_message()
