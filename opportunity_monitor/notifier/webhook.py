from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import aiohttp

log = logging.getLogger("webhook")


class WebhookBroadcaster:
    def __init__(self, *, enabled: bool, url: str, secret: str, timeout_s: int, headers: Optional[dict] = None):
        self.enabled = bool(enabled)
        self.url = url or ""
        self.secret = secret or ""
        self.timeout_s = int(timeout_s) if timeout_s is not None else 10
        self.headers = headers or {}
        self.sent = 0
        self.failed = 0

    async def broadcast(self, event: Dict[str, Any]) -> None:
        if not self.enabled or not self.url:
            return

        body = dict(event)
        if self.secret:
            body["secret"] = self.secret
        payload = json.dumps(body, separators=(",", ":"))
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, data=payload, headers={"Content-Type": "application/json", **self.headers}) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        self.failed += 1
                        log.warning("webhook_bad_status type=%s status=%s body=%s", event.get("type"), resp.status, text[:200])
                        return
            self.sent += 1
        except Exception as e:
            # Log but do not crash
            self.failed += 1
            log.warning("webhook_post_failed type=%s err=%s", event.get("type"), e)

    async def close(self) -> None:
        return None
