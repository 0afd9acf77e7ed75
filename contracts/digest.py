"""Alert digest contracts shared by the aggregator, scheduler and stores."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DIGEST_COLLECTION = "alerts_digests"
DIGEST_MAX_ITEMS = 10
DIGEST_MAX_ATTEMPTS = 3
DIGEST_COOLDOWN = timedelta(hours=24)
DIGEST_BATCH_SIZE = 50


class AlertSeverity(StrEnum):
    """Severity assigned by the upstream alert evaluation pipeline."""

    CRITICAL = "Critical"
    WARNING = "Warning"
    ADVISORY = "Advisory"


class WaterParameter(StrEnum):
    PH = "ph"
    TDS = "tds"
    TURBIDITY = "turbidity"


class DigestCategory(StrEnum):
    """Stable category strings; part of the digest storage key."""

    PH_HIGH = "ph_high"
    PH_LOW = "ph_low"
    TDS_HIGH = "tds_high"
    TDS_LOW = "tds_low"
    TURBIDITY_HIGH = "turbidity_high"
    TURBIDITY_LOW = "turbidity_low"
    TREND_ALERT = "trend_alert"
    MULTI_PARAM = "multi_param"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, use_enum_values=True
    )


class DigestAlertItem(_CamelModel):
    """One raw alert folded into a digest."""

    event_id: str
    summary: str
    timestamp: datetime
    value: Optional[float] = None
    severity: AlertSeverity
    device_name: Optional[str] = None
    parameter: str


class AlertDigest(_CamelModel):
    """Aggregated notification state for one (recipient, category, day)."""

    digest_id: str
    recipient_uid: str
    recipient_email: str
    category: str
    day: str
    items: list[DigestAlertItem] = Field(
        default_factory=list, max_length=DIGEST_MAX_ITEMS
    )
    created_at: datetime
    last_updated_at: datetime
    last_sent_at: Optional[datetime] = None
    cooldown_until: datetime
    send_attempts: int = Field(default=0, ge=0, le=DIGEST_MAX_ATTEMPTS)
    is_acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    ack_token: str
    send_lease_until: Optional[datetime] = None
    last_failure_reason: Optional[str] = None

    def is_eligible(self, now: datetime) -> bool:
        """Whether the cooldown scheduler may claim this digest at `now`."""
        if self.is_acknowledged or not self.items:
            return False
        if self.send_attempts >= DIGEST_MAX_ATTEMPTS:
            return False
        if self.cooldown_until > now:
            return False
        return self.send_lease_until is None or self.send_lease_until <= now


class RawAlertEvent(_CamelModel):
    """Already-evaluated alert emitted by the sensor alert pipeline."""

    parameter: str
    value: float
    severity: AlertSeverity
    event_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    recipient_uid: str
    recipient_email: str
    device_name: Optional[str] = None
    device_building: Optional[str] = None
    device_floor: Optional[str] = None
    alert_type: str = "threshold"


class AcknowledgeRequest(_CamelModel):
    token: str = ""
    digest_id: str = ""


class AcknowledgeResponse(_CamelModel):
    success: bool
    message: str
    digest_id: Optional[str] = None


def digest_key(recipient_uid: str, category: str, day: str) -> str:
    """Build the `{recipientUid}_{category}_{YYYY-MM-DD}` document id."""
    return f"{recipient_uid}_{category}_{day}"


def digest_day(moment: datetime) -> str:
    """UTC calendar day used in digest keys."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).date().isoformat()


__all__ = [
    "DIGEST_BATCH_SIZE",
    "DIGEST_COLLECTION",
    "DIGEST_COOLDOWN",
    "DIGEST_MAX_ATTEMPTS",
    "DIGEST_MAX_ITEMS",
    "AcknowledgeRequest",
    "AcknowledgeResponse",
    "AlertDigest",
    "AlertSeverity",
    "DigestAlertItem",
    "DigestCategory",
    "RawAlertEvent",
    "WaterParameter",
    "digest_day",
    "digest_key",
]
