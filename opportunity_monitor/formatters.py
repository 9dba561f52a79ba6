from __future__ import annotations

import html
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .models import ClassifiedAlert, CycleReport


def _fmt_ms(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def _escape_text(text: Any) -> str:
    return html.escape(str(text), quote=True)


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:.8g}"


def _fmt_pct(val: float) -> str:
    return f"{val * 100:+.2f}%"


def format_subject(alert: ClassifiedAlert) -> str:
    opp = alert.opportunity
    return f"{alert.level} {opp.symbol} {opp.strategy} {opp.direction}"


def _rows(alert: ClassifiedAlert):
    opp = alert.opportunity
    return [
        ("Entry", f"{_fmt_price(opp.entry)} ({opp.order_type})"),
        ("Stop loss", _fmt_price(opp.stop_loss)),
        ("Take profit 1", _fmt_price(opp.take_profit1)),
        ("Take profit 2", _fmt_price(opp.take_profit2)),
        ("Net R/R", f"{opp.net_rr:.2f} (gross {opp.gross_rr:.2f})"),
        ("Confidence", opp.confidence),
        ("Trigger", opp.trigger),
        ("Distance to entry", _fmt_pct(alert.distance_to_entry)),
        ("Time to trigger", f"~{alert.minutes_to_trigger} min"),
        ("Reference price", _fmt_price(opp.reference_price)),
        ("Generated", _fmt_ms(opp.timestamp_ms)),
        ("Snapshot", opp.snapshot_id or "-"),
    ]


def format_review_block(alert: ClassifiedAlert, min_net_rr: float = 1.5) -> str:
    """Plain-text candidate card with a checklist and a JSON decision template.

    Net R/R is printed to four places, not the two used elsewhere.
    """
    opp = alert.opportunity
    stop_dist = abs(opp.entry - opp.stop_loss)
    rr_ok = opp.net_rr >= min_net_rr
    lines = [
        f"[1] {opp.strategy} {opp.direction} [{opp.confidence}]",
        f"    symbol:    {opp.symbol}",
        f"    entry:     {_fmt_price(opp.entry)} ({opp.order_type})",
        f"    sl:        {_fmt_price(opp.stop_loss)}",
        f"    tp1:       {_fmt_price(opp.take_profit1)}",
        f"    tp2:       {_fmt_price(opp.take_profit2)}",
        f"    stop_dist: {_fmt_price(stop_dist)}",
        f"    net_rr:    {opp.net_rr:.4f}",
        f"    trigger:   {opp.trigger}",
        "",
        "Checklist:",
        f"    [{'x' if rr_ok else ' '}] net R/R >= {min_net_rr:.2f}",
        "    [ ] direction agrees with the higher-timeframe trend",
        "    [ ] protective stop placed together with the entry",
        "",
        "Decision (JSON):",
    ]
    decision = {
        "action": "EXECUTE | WAIT" if rr_ok else "WAIT",
        "pick": opp.strategy,
        "order_type": opp.order_type,
        "direction": opp.direction,
        "entry": opp.entry,
        "sl": opp.stop_loss,
        "tp1": opp.take_profit1,
        "tp2": opp.take_profit2,
        "reason": "",
        "checklist": [
            f"net_rr>={min_net_rr:.2f}: {'yes' if rr_ok else 'no'}",
            "direction agrees with trend",
            "protective stop placed",
        ],
    }
    return "\n".join(lines) + "\n" + json.dumps(decision, indent=2)


def format_html(alert: ClassifiedAlert) -> str:
    """Email body. Every interpolated value is escaped."""
    rows = "\n".join(
        f"<tr><td><b>{_escape_text(k)}</b></td><td>{_escape_text(v)}</td></tr>"
        for k, v in _rows(alert)
    )
    return (
        "<html><body>"
        f"<h2>{_escape_text(format_subject(alert))}</h2>"
        f"<table>\n{rows}\n</table>"
        f"<pre>{_escape_text(format_review_block(alert))}</pre>"
        "<p><i>Monitoring alert only. No order has been placed.</i></p>"
        "</body></html>"
    )


def format_text(alert: ClassifiedAlert) -> str:
    opp = alert.opportunity
    return (
        f"{format_subject(alert)} | entry={_fmt_price(opp.entry)} sl={_fmt_price(opp.stop_loss)} "
        f"tp1={_fmt_price(opp.take_profit1)} tp2={_fmt_price(opp.take_profit2)} "
        f"net_rr={opp.net_rr:.2f} dist={_fmt_pct(alert.distance_to_entry)} eta={alert.minutes_to_trigger}m"
    )


def format_test_message(app_name: str) -> str:
    return (
        "<html><body>"
        f"<h2>{_escape_text(app_name)}: test notification</h2>"
        f"<p>Sent at {_escape_text(_fmt_ms(int(time.time() * 1000)))}. Email delivery is working.</p>"
        "</body></html>"
    )


def _event(kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": kind, "data": data, "timestamp": int(time.time() * 1000)}


def opportunity_event(alert: ClassifiedAlert, risk_score: Optional[int] = None) -> Dict[str, Any]:
    data = {
        "level": alert.level,
        "distance_to_entry": alert.distance_to_entry,
        "minutes_to_trigger": alert.minutes_to_trigger,
        "opportunity": alert.opportunity.to_dict(),
    }
    if risk_score is not None:
        data["risk_score"] = risk_score
    return _event("OPPORTUNITY", data)


def status_event(report: CycleReport) -> Dict[str, Any]:
    return _event("STATUS", report.to_dict())
