from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

import aiohttp

from ..config import EmailConfig

log = logging.getLogger("email")


class HttpEmailSender:
    """Transactional email over a Resend-compatible JSON API."""

    def __init__(self, api_url: str, api_key: str, from_email: str, *, timeout_s: int = 15):
        self.api_url = api_url
        self.api_key = api_key.strip()
        self.from_email = from_email
        self.timeout_s = int(timeout_s)

    def _headers(self):
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def send(self, to: str, subject: str, html: str) -> bool:
        payload = {"from": self.from_email, "to": [to], "subject": subject, "html": html}
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as sess:
                async with sess.post(self.api_url, json=payload, headers=self._headers()) as resp:
                    if resp.status >= 300:
                        body = await resp.text()
                        log.warning("email_send_failed to=%s status=%s body=%s", to, resp.status, body[:2000])
                        return False
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("email_send_exception to=%s err=%s", to, e)
            return False

    async def check(self) -> bool:
        # the API has no ping; an authenticated GET on the base tells us key + reachability
        base = self.api_url.rsplit("/", 1)[0] + "/domains"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as sess:
                async with sess.get(base, headers=self._headers()) as resp:
                    ok = resp.status < 400
                    if not ok:
                        log.warning("email_check_failed status=%s", resp.status)
                    return ok
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("email_check_exception err=%s", e)
            return False


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        from_email: str,
        *,
        timeout_s: int = 15,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.from_email = from_email
        self.timeout_s = int(timeout_s)

    def _connect(self) -> smtplib.SMTP:
        if self.port == 465:
            conn = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_s, context=ssl.create_default_context())
        else:
            conn = smtplib.SMTP(self.host, self.port, timeout=self.timeout_s)
            conn.starttls(context=ssl.create_default_context())
        if self.user:
            conn.login(self.user, self.password)
        return conn

    def _send_sync(self, to: str, subject: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.from_email
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This alert requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        with self._connect() as conn:
            conn.send_message(msg)

    def _check_sync(self) -> None:
        with self._connect() as conn:
            conn.noop()

    async def send(self, to: str, subject: str, html: str) -> bool:
        try:
            await asyncio.to_thread(self._send_sync, to, subject, html)
            return True
        except (smtplib.SMTPException, OSError) as e:
            log.warning("email_send_exception to=%s err=%s", to, e)
            return False

    async def check(self) -> bool:
        try:
            await asyncio.to_thread(self._check_sync)
            return True
        except (smtplib.SMTPException, OSError) as e:
            log.warning("email_check_exception err=%s", e)
            return False


def build_email_sender(cfg: EmailConfig) -> Optional[object]:
    if cfg.api_key:
        return HttpEmailSender(cfg.api_url, cfg.api_key, cfg.from_email, timeout_s=cfg.timeout_s)
    if cfg.smtp_host and cfg.smtp_user:
        return SmtpEmailSender(
            cfg.smtp_host,
            cfg.smtp_port,
            cfg.smtp_user,
            cfg.smtp_password,
            cfg.from_email,
            timeout_s=cfg.timeout_s,
        )
    log.warning("email_disabled reason=no_api_key_or_smtp_host")
    return None
