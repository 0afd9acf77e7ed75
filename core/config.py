"""Environment-driven settings for the digest notifier service."""

import os
from typing import Optional

import pydantic
from pydantic import BaseModel, Field

from contracts.digest import DIGEST_BATCH_SIZE


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class DigestSettings(BaseModel):
    mongo_url: Optional[str] = None
    mongo_db_name: str = "water_quality"
    redis_url: Optional[str] = None
    thresholds_redis_key: str = "policy:thresholds"
    nats_url: Optional[str] = None
    alert_subject: str = "alerts.raw.>"
    heartbeat_subject: str = "digest.heartbeat"

    scan_interval_seconds: float = Field(default=300.0, gt=0)
    batch_size: int = Field(default=DIGEST_BATCH_SIZE, gt=0)
    max_concurrency: int = Field(default=5, gt=0)
    transport_timeout_seconds: float = Field(default=30.0, gt=0)
    send_lease_seconds: float = Field(default=900.0, gt=0)

    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_sender: str = "PureTrack Alerts <alerts@puretrack.app>"
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_relay_url: Optional[str] = None
    ack_base_url: str = "https://puretrack.app/acknowledge"

    @pydantic.model_validator(mode="after")
    def validate_lease(self) -> "DigestSettings":
        if self.send_lease_seconds <= self.transport_timeout_seconds:
            raise ValueError(
                "send_lease_seconds must exceed transport_timeout_seconds"
            )
        return self

    @classmethod
    def from_env(cls) -> "DigestSettings":
        return cls(
            mongo_url=os.getenv("MONGO_URL"),
            mongo_db_name=os.getenv("MONGO_DB_NAME", "water_quality"),
            redis_url=os.getenv("REDIS_URL"),
            thresholds_redis_key=os.getenv("THRESHOLDS_REDIS_KEY", "policy:thresholds"),
            nats_url=os.getenv("NATS_URL"),
            alert_subject=os.getenv("ALERT_SUBJECT", "alerts.raw.>"),
            heartbeat_subject=os.getenv("HEARTBEAT_SUBJECT", "digest.heartbeat"),
            scan_interval_seconds=float(
                os.getenv("DIGEST_SCAN_INTERVAL_SECONDS", "300")
            ),
            batch_size=int(os.getenv("DIGEST_BATCH_SIZE", str(DIGEST_BATCH_SIZE))),
            max_concurrency=int(os.getenv("DIGEST_MAX_CONCURRENCY", "5")),
            transport_timeout_seconds=float(
                os.getenv("DIGEST_TRANSPORT_TIMEOUT_SECONDS", "30")
            ),
            send_lease_seconds=float(os.getenv("DIGEST_SEND_LEASE_SECONDS", "900")),
            smtp_host=os.getenv("SMTP_HOST", "localhost"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_sender=os.getenv(
                "SMTP_SENDER", "PureTrack Alerts <alerts@puretrack.app>"
            ),
            smtp_username=os.getenv("SMTP_USERNAME"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            smtp_use_tls=_flag("SMTP_USE_TLS", "true"),
            email_relay_url=os.getenv("EMAIL_RELAY_URL"),
            ack_base_url=os.getenv("ACK_BASE_URL", "https://puretrack.app/acknowledge"),
        )


__all__ = ["DigestSettings"]
