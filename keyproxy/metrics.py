# keyproxy/metrics.py
import json
import logging
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def tokens_per_second(usage: Any, request_seconds: float) -> float | None:
    """Completion tokens per second, or None when the count is absent or not numeric.

    Numeric strings such as ``"10"`` are counted; lists, dicts and booleans are not.
    """
    completion_tokens = usage.get("completion_tokens") if isinstance(usage, dict) else None
    if not completion_tokens or isinstance(completion_tokens, bool) or request_seconds <= 0:
        return None
    try:
        count = float(completion_tokens)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(count) or count == 0:
        return None
    return round(count / request_seconds, 2)


@dataclass(frozen=True)
class UsageRecord:
    apikey: str
    timestamp: str
    request_seconds: float
    tokens_per_second: float | None
    usage: Any

    @classmethod
    def build(cls, apikey: str, timestamp: str, request_seconds: float, usage: Any) -> "UsageRecord":
        return cls(
            apikey=apikey,
            timestamp=timestamp,
            request_seconds=request_seconds,
            tokens_per_second=tokens_per_second(usage, request_seconds),
            usage=usage,
        )


class MetricsLog:
    """Append-only JSON-lines sink for usage records."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def append(self, record: UsageRecord) -> None:
        """Write one line; failures are logged and never raised."""
        try:
            line = json.dumps(asdict(record)) + "\n"
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write usage log %s: %s", self.path, exc)
