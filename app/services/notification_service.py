"""Operator alert emails for reconciliation failures."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Iterable, List, Optional, Sequence

from app.core.config import Settings

logger = logging.getLogger(__name__)


class OperatorAlertService:
    """SMTP helper for alerts that need a human (refunds, credentials, funds)."""

    def __init__(self, settings: Settings):
        self._settings = settings

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send_alert(
        self,
        subject: str,
        lines: Sequence[str],
        *,
        urgent: bool = False,
        recipients: Optional[Sequence[str]] = None,
    ) -> bool:
        """Log the alert and email it when SMTP is configured.

        Returns True only if an email was actually sent.
        """
        prefix = "[URGENT] " if urgent else ""
        full_subject = f"{prefix}{subject}"
        log = logger.critical if urgent else logger.warning
        log("Operator alert: %s | %s", full_subject, " | ".join(lines))

        if not self._ready():
            logger.debug("SMTP configuration incomplete; alert email skipped")
            return False

        to_addresses = self._resolve_recipients(recipients)
        if not to_addresses:
            logger.warning("No recipients configured for operator alert; skipping email")
            return False

        body_lines: List[str] = list(lines) + ["", "Sent automatically by the reconciliation service"]
        message = self._build_message(full_subject, to_addresses, "\n".join(body_lines))
        return await self._dispatch(message)

    async def alert_manual_refund(self, pid: str, storefront_order_id: str, reason: str) -> bool:
        return await self.send_alert(
            f"Manual refund required for order {storefront_order_id}",
            [
                f"Marketplace item: {pid}",
                f"Storefront order: {storefront_order_id}",
                f"Reason: {reason}",
                "The item could not be bought on the marketplace. Refund the customer.",
            ],
        )

    async def alert_circuit_open(self, reason: str, pid: Optional[str] = None) -> bool:
        lines = [f"Reason: {reason}", "Marketplace order placement is suspended until a probe succeeds."]
        if pid:
            lines.insert(0, f"Triggered by item: {pid}")
        return await self.send_alert("Marketplace order placement suspended", lines, urgent=True)

    async def alert_low_balance(self, balance: int, threshold: int) -> bool:
        return await self.send_alert(
            "Marketplace account balance low",
            [f"Balance: {balance:,}", f"Threshold: {threshold:,}"],
        )

    async def alert_parked_job(self, job_id: int, listing_key: str, event_kind: str, error: str) -> bool:
        return await self.send_alert(
            f"Reconciliation job {job_id} parked",
            [f"Listing: {listing_key}", f"Event: {event_kind}", f"Last error: {error}"],
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _ready(self) -> bool:
        settings = self._settings
        return bool(settings.SMTP_HOST and settings.SMTP_USERNAME and settings.SMTP_PASSWORD)

    def _resolve_recipients(self, override: Optional[Sequence[str]]) -> List[str]:
        recipients: Iterable[str] = override if override else self._settings.NOTIFICATION_EMAILS
        return [email.strip() for email in recipients if email]

    def _build_message(self, subject: str, to_addresses: Sequence[str], body_text: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._formatted_from_address
        message["To"] = ", ".join(sorted(set(to_addresses)))
        message.set_content(body_text)
        return message

    @property
    def _formatted_from_address(self) -> str:
        from_email = self._settings.SMTP_FROM_EMAIL or self._settings.SMTP_USERNAME
        from_name = self._settings.SMTP_FROM_NAME or "Reconciliation Alerts"
        return formataddr((from_name, from_email))

    async def _dispatch(self, message: EmailMessage) -> bool:
        try:
            await asyncio.to_thread(self._send_sync, message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send operator alert email: %s", exc, exc_info=True)
            return False
        logger.info("Operator alert email sent to %s", message["To"])
        return True

    def _send_sync(self, message: EmailMessage) -> None:
        settings = self._settings
        host = settings.SMTP_HOST
        port = settings.SMTP_PORT or (465 if settings.SMTP_USE_SSL else 587)
        timeout = settings.SMTP_TIMEOUT

        if settings.SMTP_USE_SSL:
            smtp = smtplib.SMTP_SSL(host=host, port=port, timeout=timeout)
        else:
            smtp = smtplib.SMTP(host=host, port=port, timeout=timeout)
        try:
            if settings.SMTP_USE_TLS and not settings.SMTP_USE_SSL:
                smtp.starttls()
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            smtp.send_message(message)
        finally:
            try:
                smtp.quit()
            except smtplib.SMTPException:
                smtp.close()
