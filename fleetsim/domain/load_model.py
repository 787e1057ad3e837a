"""Diurnal load model: hour of day -> load multiplier."""

from datetime import datetime

# Weight per hour (0-100): quiet overnight, ramp through the morning,
# peak mid-afternoon, decline in the evening.
DAILY_LOAD_PATTERN: tuple[int, ...] = (
    30, 20, 15, 10, 10, 15,  # 00-05
    25, 40, 60, 70, 75, 80,  # 06-11
    85, 90, 85, 80, 75, 70,  # 12-17
    65, 60, 55, 50, 40, 35,  # 18-23
)  # fmt: skip


def load_multiplier(hour: int) -> float:
    """Return the load multiplier (0.1-0.9) for an hour of day."""
    return DAILY_LOAD_PATTERN[hour % 24] / 100


def load_multiplier_at(timestamp: datetime) -> float:
    return load_multiplier(timestamp.hour)
