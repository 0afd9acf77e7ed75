"""Pure categorization of raw alerts into digest categories."""

from __future__ import annotations

import math

from apps.notifier.thresholds import AlertThresholds
from contracts.digest import DigestCategory, RawAlertEvent

_HIGH_LOW_PARAMETERS = {
    "ph": (DigestCategory.PH_HIGH, DigestCategory.PH_LOW),
    "tds": (DigestCategory.TDS_HIGH, DigestCategory.TDS_LOW),
    "turbidity": (DigestCategory.TURBIDITY_HIGH, DigestCategory.TURBIDITY_LOW),
}

_DISPLAY_NAMES = {"ph": "pH", "tds": "TDS", "turbidity": "Turbidity"}


def categorize(
    parameter: str,
    value: float | None,
    thresholds: AlertThresholds,
    *,
    alert_type: str = "threshold",
) -> str:
    """
    Map an alert to its digest category.

    Never fails: anything that cannot be classified lands in `multi_param`
    so that no alert is dropped for lack of a category.
    """
    if alert_type == "trend":
        return DigestCategory.TREND_ALERT.value

    categories = _HIGH_LOW_PARAMETERS.get(parameter)
    band = thresholds.for_parameter(parameter)
    if categories is None or band is None:
        return DigestCategory.MULTI_PARAM.value
    if value is None or not math.isfinite(value):
        return DigestCategory.MULTI_PARAM.value

    high, low = categories
    if band.warning_max is not None and value > band.warning_max:
        return high.value
    if band.warning_min is not None and value < band.warning_min:
        return low.value

    return DigestCategory.MULTI_PARAM.value


def summarize_alert(event: RawAlertEvent, thresholds: AlertThresholds) -> str:
    """Short human-readable line such as `Critical: pH 9.20 at Block A, 2F`."""
    name = _DISPLAY_NAMES.get(event.parameter, event.parameter)
    band = thresholds.for_parameter(event.parameter)
    unit = f" {band.unit}" if band is not None and band.unit else ""

    if event.device_building and event.device_floor:
        location = f" at {event.device_building}, {event.device_floor}"
    elif event.device_building:
        location = f" at {event.device_building}"
    else:
        location = ""

    return f"{event.severity}: {name} {event.value:.2f}{unit}{location}"

