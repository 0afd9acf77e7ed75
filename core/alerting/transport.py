"""Outbound digest email transports and message rendering."""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any

import httpx

from contracts.digest import DIGEST_MAX_ATTEMPTS, DigestAlertItem

logger = logging.getLogger(__name__)

_SEVERITY_COLORS = {
    "Critical": "#dc3545",
    "Warning": "#ffc107",
    "Advisory": "#17a2b8",
}


@dataclass(slots=True)
class DigestEmail:
    """Snapshot of a claimed digest, rendered into one notification."""

    digest_id: str
    recipient_email: str
    category: str
    items: list[DigestAlertItem]
    created_at: datetime
    attempt: int
    ack_url: str

    @property
    def remaining_reminders(self) -> int:
        return max(DIGEST_MAX_ATTEMPTS - self.attempt, 0)


def _format_time(moment: datetime) -> str:
    return moment.strftime("%b %d, %H:%M UTC")


def build_subject(email: DigestEmail) -> str:
    label = email.category.replace("_", " ").upper()
    return f"⚠️ Alert Digest: {label} (Attempt {email.attempt}/{DIGEST_MAX_ATTEMPTS})"


def render_text(email: DigestEmail) -> str:
    count = len(email.items)
    lines = [
        "Water Quality Alert Digest",
        f"Category: {email.category.replace('_', ' ').upper()}",
        f"{count} alert{'s' if count != 1 else ''} aggregated since "
        f"{_format_time(email.created_at)}",
        "",
    ]
    for item in email.items:
        lines.append(
            f"- [{item.severity}] {item.device_name or 'Unknown'}: "
            f"{item.summary} ({_format_time(item.timestamp)})"
        )
    lines.extend(
        [
            "",
            f"Acknowledge and stop alerts: {email.ack_url}",
            f"Reminders left: {email.remaining_reminders}",
        ]
    )
    return "\n".join(lines)


def render_html(email: DigestEmail) -> str:
    rows = "".join(
        "<tr>"
        f'<td><span style="background:{_SEVERITY_COLORS.get(item.severity, "#6c757d")};'
        f'color:white;padding:4px 8px;border-radius:4px">{html.escape(item.severity)}</span></td>'
        f"<td>{html.escape(item.device_name or 'Unknown')}</td>"
        f"<td>{html.escape(item.summary)}</td>"
        f"<td>{_format_time(item.timestamp)}</td>"
        "</tr>"
        for item in email.items
    )
    ack_url = html.escape(email.ack_url, quote=True)
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif\">"
        "<h2>Water Quality Alert Digest</h2>"
        f"<p>Category: {html.escape(email.category.replace('_', ' ').upper())}</p>"
        "<table><thead><tr><th>Severity</th><th>Device</th><th>Issue</th>"
        f"<th>Time</th></tr></thead><tbody>{rows}</tbody></table>"
        f'<p><a href="{ack_url}">Acknowledge &amp; Stop Alerts</a></p>'
        f"<p>You have {email.remaining_reminders} reminder(s) left. "
        f"Attempt {email.attempt} of {DIGEST_MAX_ATTEMPTS}.</p>"
        "</body></html>"
    )


def render_digest_message(email: DigestEmail, sender: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = build_subject(email)
    msg["From"] = sender
    msg["To"] = email.recipient_email
    msg.set_content(render_text(email))
    msg.add_alternative(render_html(email), subtype="html")
    return msg


class DigestTransport:
    """Transport interface: True when the digest was handed off."""

    async def send(self, email: DigestEmail) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SmtpTransport(DigestTransport):
    """SMTP delivery; the blocking client runs in a worker thread."""

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        smtp_factory: Any = smtplib.SMTP,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.smtp_factory = smtp_factory

    def _deliver(self, msg: EmailMessage) -> None:
        with self.smtp_factory(
            self.smtp_host, self.smtp_port, timeout=self.timeout
        ) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(msg)

    async def send(self, email: DigestEmail) -> bool:
        msg = render_digest_message(email, self.sender)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"SMTP delivery failed for digest {email.digest_id}: {exc}")
            return False
        return True


class HttpRelayTransport(DigestTransport):
    """Posts rendered digests to an HTTP email relay."""

    def __init__(
        self,
        url: str,
        *,
        sender: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.sender = sender
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "Digest-Notifier/1.0"},
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def send(self, email: DigestEmail) -> bool:
        payload = {
            "from": self.sender,
            "to": email.recipient_email,
            "subject": build_subject(email),
            "text": render_text(email),
            "html": render_html(email),
            "digestId": email.digest_id,
        }
        try:
            response = await self.client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.error(f"Email relay request failed for {email.digest_id}: {exc}")
            return False

        if response.is_error:
            logger.error(
                f"Email relay rejected digest {email.digest_id}: "
                f"{response.status_code} - {response.text}"
            )
            return False
        return True
