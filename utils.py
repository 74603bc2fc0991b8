from datetime import datetime, timezone
from typing import Callable
from config import SECONDS_PER_DAY

Clock = Callable[[], float]


def timestamp() -> float:
    return datetime.now(timezone.utc).timestamp()


def days(count: int) -> float:
    """Convert a number of days to seconds."""
    return float(count * SECONDS_PER_DAY)
