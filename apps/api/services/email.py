"""Transactional email over SMTP."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from config import Settings

logger = logging.getLogger(__name__)


class Mailer:
    """Sends purchase confirmations. Skips (and logs) when SMTP is not configured."""

    def __init__(
        self,
        host: str,
        port: int,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_email: str = "billing@practice.local",
        credits_per_minute: int = 1,
    ):
        self.host = (host or "").strip()
        self.port = int(port)
        self.username = username or None
        self.password = password or None
        self.use_tls = use_tls
        self.from_email = from_email
        self.credits_per_minute = max(int(credits_per_minute), 1)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
            from_email=settings.EMAIL_FROM,
            credits_per_minute=settings.BILLING_CREDITS_PER_MINUTE,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def _send_sync(self, to_email: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, to_email: str, subject: str, body: str) -> bool:
        if not self.configured:
            logger.warning("SMTP not configured, skipping email", extra={"subject": subject})
            return False
        await asyncio.to_thread(self._send_sync, to_email, subject, body)
        logger.info("Email sent", extra={"subject": subject})
        return True

    async def send_credit_purchase_confirmation(
        self,
        to_email: str,
        student_name: str,
        credits: int,
        amount_in_cents: int,
        package_name: str,
        currency: str = "gbp",
    ) -> bool:
        amount = f"{amount_in_cents / 100:.2f} {currency.upper()}"
        if self.credits_per_minute == 1:
            usage = "Each credit covers one minute of voice practice."
        else:
            usage = f"Each minute of voice practice uses {self.credits_per_minute} credits."
        subject = f"Your purchase of {credits} credits is confirmed"
        body = (
            f"Hi {student_name},\n\n"
            f"Thanks for your purchase. {credits} credits from the {package_name} package "
            f"have been added to your account.\n\n"
            f"Amount paid: {amount}\n\n"
            f"{usage}\n"
        )
        return await self.send(to_email, subject, body)
