"""Water-quality threshold bands used to categorize digest alerts."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class ParameterThresholds(BaseModel):
    warning_min: Optional[float] = None
    warning_max: Optional[float] = None
    critical_min: Optional[float] = None
    critical_max: Optional[float] = None
    unit: str = ""


class AlertThresholds(BaseModel):
    """Threshold policy loaded from Redis `policy:thresholds`."""

    ph: ParameterThresholds = ParameterThresholds(
        warning_min=6.0, warning_max=8.5, critical_min=5.5, critical_max=9.0
    )
    tds: ParameterThresholds = ParameterThresholds(
        warning_min=0, warning_max=500, critical_min=0, critical_max=1000, unit="ppm"
    )
    turbidity: ParameterThresholds = ParameterThresholds(
        warning_min=0, warning_max=5, critical_min=0, critical_max=10, unit="NTU"
    )

    def for_parameter(self, parameter: str) -> ParameterThresholds | None:
        if parameter not in type(self).model_fields:
            return None
        return getattr(self, parameter)


DEFAULT_THRESHOLDS = AlertThresholds()


class ThresholdProvider:
    """Resolves the current thresholds, falling back to defaults."""

    def __init__(
        self,
        redis_adapter: Any | None = None,
        redis_key: str = "policy:thresholds",
    ):
        self.redis_adapter = redis_adapter
        self.redis_key = redis_key

    async def get_thresholds(self) -> AlertThresholds:
        if self.redis_adapter is None:
            return DEFAULT_THRESHOLDS

        try:
            payload = await self.redis_adapter.get_json(self.redis_key)
        except Exception as exc:
            logger.warning(f"Failed to load thresholds, using defaults: {exc}")
            return DEFAULT_THRESHOLDS

        if not payload:
            return DEFAULT_THRESHOLDS

        try:
            return AlertThresholds(**payload)
        except ValidationError as exc:
            logger.warning(
                f"Invalid threshold payload at {self.redis_key}, using defaults: {exc}"
            )
            return DEFAULT_THRESHOLDS
