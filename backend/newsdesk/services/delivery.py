"""
Delivery Gateway - sends a digest and records that it went out.

The record is written only after the transport accepts the message. A
crash between those two steps can re-send one digest on restart; the
alternative ordering could lose it.
"""
import asyncio
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional

import structlog

from newsdesk.config import Settings
from newsdesk.core.errors import DeliveryFailed
from newsdesk.core.retry import RetryPolicy
from newsdesk.core.timeutil import utcnow
from newsdesk.models.domain import DeliveryRecord, DigestPayload
from newsdesk.services.persistence import PersistenceGateway

logger = structlog.get_logger()


class DigestTransport(ABC):
    """Outbound transport for rendered digests."""

    name: str = "transport"

    @abstractmethod
    async def send(self, payload: DigestPayload, recipients: list[str]) -> None:
        """Hand the digest to the transport. Raise on refusal."""
        pass


class EmailTransport(DigestTransport):
    """SMTP transport. The blocking client runs in a worker thread."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: str = "newsdesk@localhost",
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailTransport":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            sender=settings.email_from,
            use_tls=settings.smtp_use_tls,
            timeout=settings.send_timeout_seconds,
        )

    def build_message(self, payload: DigestPayload, recipients: list[str]) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = payload.subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(payload.text_body, "plain", "utf-8"))
        msg.attach(MIMEText(payload.html_body, "html", "utf-8"))
        return msg

    def _send_sync(self, payload: DigestPayload, recipients: list[str]) -> None:
        msg = self.build_message(payload, recipients)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.sendmail(self.sender, recipients, msg.as_string())

    async def send(self, payload: DigestPayload, recipients: list[str]) -> None:
        await asyncio.to_thread(self._send_sync, payload, recipients)


class DeliveryGateway:
    """
    Exactly-once-per-slot delivery on top of an at-least-once transport.

    Checks the delivery log before sending, retries the transport with
    back-off, then writes the DeliveryRecord.
    """

    def __init__(
        self,
        transport: DigestTransport,
        repository: PersistenceGateway,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.transport = transport
        self.repository = repository
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=5.0)
        self.timeout = timeout
        self.clock = clock

    async def already_delivered(self, digest_key: str) -> bool:
        return await self.repository.get_delivery(digest_key) is not None

    async def send(
        self,
        payload: DigestPayload,
        recipients: list[str],
    ) -> Optional[DeliveryRecord]:
        """
        Deliver a digest once.

        Returns the written record, or None when the slot had already been
        delivered. Raises DeliveryFailed after the retry policy runs out.
        """
        key = payload.slot.digest_key
        if not recipients:
            raise DeliveryFailed(key, "no recipients configured")

        if await self.already_delivered(key):
            logger.info("Digest already delivered, skipping", digest_key=key)
            return None

        try:
            await self.retry_policy.call(
                lambda: self._attempt(payload, recipients),
                retry_on=(DeliveryFailed,),
                label=f"deliver:{key}",
            )
        except DeliveryFailed as e:
            raise DeliveryFailed(key, e.reason, attempts=self.retry_policy.max_attempts) from e

        record = DeliveryRecord(
            digest_key=key,
            kind=payload.slot.kind,
            window_start=payload.slot.window_start,
            window_end=payload.slot.window_end,
            sent_at=self.clock(),
            article_fingerprints=payload.fingerprints,
            recipients=list(recipients),
        )
        written = await self.repository.record_delivery(record)
        if not written:
            # Another process recorded this key while we were sending.
            logger.warning("Delivery record already present after send", digest_key=key)
            return await self.repository.get_delivery(key)

        logger.info(
            "Digest delivered",
            digest_key=key,
            transport=self.transport.name,
            recipients=len(recipients),
            articles=len(payload.entries),
        )
        return record

    async def _attempt(self, payload: DigestPayload, recipients: list[str]) -> None:
        key = payload.slot.digest_key
        try:
            await asyncio.wait_for(
                self.transport.send(payload, recipients),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise DeliveryFailed(key, f"transport timed out after {self.timeout:.0f}s") from e
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryFailed(key, f"{self.transport.name} refused: {e}") from e
