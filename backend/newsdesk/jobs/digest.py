"""
Digest cycle: compose the slot's digest and deliver it at most once.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog

from newsdesk.models.domain import DeliveryRecord, DigestKind
from newsdesk.services.delivery import DeliveryGateway
from newsdesk.services.digest import DigestComposer

logger = structlog.get_logger()


class DigestOutcome(str, Enum):
    SENT = "sent"
    ALREADY_DELIVERED = "already_delivered"
    EMPTY = "empty"
    NO_RECIPIENTS = "no_recipients"


@dataclass
class DigestReport:
    digest_key: str
    outcome: DigestOutcome
    articles: int = 0
    record: Optional[DeliveryRecord] = None

    def to_dict(self) -> dict:
        return {
            "digest_key": self.digest_key,
            "outcome": self.outcome.value,
            "articles": self.articles,
            "sent_at": self.record.sent_at.isoformat() if self.record else None,
        }


class DigestJob:
    """Runs one digest slot end to end.

    Every outcome returned here counts as a completed slot; delivery
    failures propagate as DeliveryFailed so the scheduler can retry.
    """

    def __init__(
        self,
        composer: DigestComposer,
        gateway: DeliveryGateway,
        recipients: list[str],
        send_empty: bool = False,
    ):
        self.composer = composer
        self.gateway = gateway
        self.recipients = recipients
        self.send_empty = send_empty

    async def run(self, kind: DigestKind, slot_time: datetime) -> DigestReport:
        slot = self.composer.slot_for(kind, slot_time)
        logger.info(
            "Starting digest cycle",
            digest_key=slot.digest_key,
            window_start=slot.window_start.isoformat(),
            window_end=slot.window_end.isoformat(),
        )

        if await self.gateway.already_delivered(slot.digest_key):
            logger.info("Digest already delivered, skipping", digest_key=slot.digest_key)
            return DigestReport(slot.digest_key, DigestOutcome.ALREADY_DELIVERED)

        if not self.recipients:
            logger.warning("No digest recipients configured", digest_key=slot.digest_key)
            return DigestReport(slot.digest_key, DigestOutcome.NO_RECIPIENTS)

        payload = await self.composer.compose(slot)
        if payload.is_empty and not self.send_empty:
            logger.info("Digest empty, not sending", digest_key=slot.digest_key)
            return DigestReport(slot.digest_key, DigestOutcome.EMPTY)

        record = await self.gateway.send(payload, self.recipients)
        if record is None:
            return DigestReport(slot.digest_key, DigestOutcome.ALREADY_DELIVERED)
        return DigestReport(
            slot.digest_key,
            DigestOutcome.SENT,
            articles=len(payload.entries),
            record=record,
        )
