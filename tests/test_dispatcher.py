import asyncio
import json

from opportunity_monitor.config import NotificationConfig
from opportunity_monitor.dispatcher import NotificationDispatcher
from opportunity_monitor.formatters import (
    format_html,
    format_review_block,
    format_subject,
    opportunity_event,
    status_event,
)
from opportunity_monitor.models import FIRED, CandidateOpportunity, ClassifiedAlert, CycleReport


class FakeSender:
    def __init__(self, fail_symbols=()):
        self.fail_symbols = set(fail_symbols)
        self.sent = []

    async def send(self, to, subject, html):
        self.sent.append((to, subject))
        return not any(sym in subject for sym in self.fail_symbols)

    async def check(self):
        return True


def _alert(symbol: str, trigger: str = "Breakout LONG") -> ClassifiedAlert:
    opp = CandidateOpportunity(
        id=f"id-{symbol}",
        symbol=symbol,
        strategy="BREAKOUT",
        direction="LONG",
        entry=100.0,
        stop_loss=98.5,
        take_profit1=103.0,
        take_profit2=104.5,
        net_rr=1.88,
        gross_rr=2.0,
        confidence="MEDIUM",
        trigger=trigger,
        timestamp_ms=1_700_000_000_000,
        distance_to_entry=0.0,
        reference_price=100.0,
        atr_pct=0.01,
    )
    return ClassifiedAlert(opp, FIRED, 0.0, 0.01, 0, 1_700_000_000_000)


def _dispatcher(sender, **kw):
    cfg = NotificationConfig(delay_s=0.0, **kw)
    return NotificationDispatcher(sender, ["ops@example.com"], cfg)


def test_fifo_delivery_and_failure_does_not_stop_queue():
    sender = FakeSender(fail_symbols={"ETHUSDT"})

    async def _run():
        d = _dispatcher(sender)
        for sym in ("BTCUSDT", "ETHUSDT", "SOLUSDT"):
            assert d.deliver(_alert(sym))
        await d.close(timeout=5)
        return d

    d = asyncio.run(_run())
    assert [s for _, s in sender.sent] == [
        "FIRED BTCUSDT BREAKOUT LONG",
        "FIRED ETHUSDT BREAKOUT LONG",
        "FIRED SOLUSDT BREAKOUT LONG",
    ]
    assert d.queue_status() == {"pending": 0, "processing": False, "sent": 2, "failed": 1}


def test_delay_between_messages():
    sender = FakeSender()

    async def _run():
        d = NotificationDispatcher(sender, ["ops@example.com"], NotificationConfig(delay_s=0.05))
        loop = asyncio.get_running_loop()
        started = loop.time()
        d.deliver(_alert("BTCUSDT"))
        d.deliver(_alert("ETHUSDT"))
        d.deliver(_alert("SOLUSDT"))
        await d.close(timeout=5)
        return loop.time() - started

    elapsed = asyncio.run(_run())
    assert elapsed >= 0.1
    assert len(sender.sent) == 3


class TimedSender(FakeSender):
    async def send(self, to, subject, html):
        self.sent.append((asyncio.get_running_loop().time(), subject))
        return True


def test_delay_holds_for_alert_queued_after_queue_drained():
    sender = TimedSender()

    async def _run():
        d = NotificationDispatcher(sender, ["ops@example.com"], NotificationConfig(delay_s=0.2))
        d.deliver(_alert("BTCUSDT"))
        await asyncio.sleep(0.05)
        assert d.queue_status()["pending"] == 0
        d.deliver(_alert("ETHUSDT"))
        await d.close(timeout=5)

    asyncio.run(_run())
    assert len(sender.sent) == 2
    gap = sender.sent[1][0] - sender.sent[0][0]
    assert gap >= 0.19


def test_full_queue_rejects():
    async def _run():
        d = _dispatcher(FakeSender(), queue_size=1)
        first = d.deliver(_alert("BTCUSDT"))
        second = d.deliver(_alert("ETHUSDT"))
        await d.close(timeout=5)
        return first, second

    assert asyncio.run(_run()) == (True, False)


def test_closed_dispatcher_rejects():
    async def _run():
        d = _dispatcher(FakeSender())
        await d.close()
        return d.deliver(_alert("BTCUSDT"))

    assert asyncio.run(_run()) is False


def test_disabled_email_skips_without_error():
    async def _run():
        d = _dispatcher(None)
        assert d.deliver(_alert("BTCUSDT"))
        await d.close(timeout=5)
        assert not await d.send_test_message()
        assert not await d.test_connectivity()

    asyncio.run(_run())


def test_test_message_and_connectivity():
    sender = FakeSender()

    async def _run():
        d = _dispatcher(sender)
        return await d.send_test_message(), await d.test_connectivity()

    assert asyncio.run(_run()) == (True, True)
    assert sender.sent[0][1] == "Opportunity Monitor: test notification"


def test_html_body_is_escaped():
    alert = _alert("BTCUSDT", trigger="<script>alert(1)</script>")
    body = format_html(alert)
    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert format_subject(alert) == "FIRED BTCUSDT BREAKOUT LONG"


def test_event_payloads():
    evt = opportunity_event(_alert("BTCUSDT"), risk_score=88)
    assert evt["type"] == "OPPORTUNITY"
    assert evt["data"]["risk_score"] == 88
    assert evt["data"]["opportunity"]["symbol"] == "BTCUSDT"

    report = CycleReport(started_at_ms=1000, finished_at_ms=1500, instruments_attempted=4, instruments_succeeded=3)
    status = status_event(report)
    assert status["type"] == "STATUS"
    assert status["data"]["duration_ms"] == 500
    assert status["data"]["success_rate"] == 75.0


def test_review_block_has_checklist_and_decision_json():
    alert = _alert("BTCUSDT")
    block = format_review_block(alert)
    assert "[1] BREAKOUT LONG [MEDIUM]" in block
    assert "[x] net R/R >= 1.50" in block

    decision = json.loads(block.split("Decision (JSON):\n", 1)[1])
    assert decision["pick"] == "BREAKOUT"
    assert decision["entry"] == 100.0
    assert decision["tp2"] == 104.5
    assert decision["checklist"][0] == "net_rr>=1.50: yes"

    strict = json.loads(format_review_block(alert, min_net_rr=2.0).split("Decision (JSON):\n", 1)[1])
    assert strict["action"] == "WAIT"
    assert "&quot;pick&quot;: &quot;BREAKOUT&quot;" in format_html(alert)
