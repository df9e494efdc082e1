# keyproxy/allowlist.py
import logging
import time
from pathlib import Path
from typing import Callable

from cachetools import TTLCache

logger = logging.getLogger(__name__)


def parse_keys(text: str) -> frozenset[str]:
    """Return the keys in an allow-list file body; blanks and '#' lines are skipped."""
    return frozenset(
        line
        for line in (raw.strip() for raw in text.split("\n"))
        if line and not line.startswith("#")
    )


class KeyAllowlist:
    """Membership check against a newline-separated key file.

    With ``cache_ttl > 0`` the parsed set is reused until it expires, so edits to
    the file show up within ``cache_ttl`` seconds without a restart.
    """

    def __init__(
        self,
        path: str | Path,
        cache_ttl: float = 0.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(path)
        self._cache: TTLCache | None = (
            TTLCache(maxsize=1, ttl=cache_ttl, timer=timer) if cache_ttl > 0 else None
        )

    def is_allowed(self, key: str) -> bool:
        if not key or key.startswith("#"):
            return False
        return key in self._keys()

    def _keys(self) -> frozenset[str]:
        if self._cache is None:
            return self._load()
        keys = self._cache.get("keys")
        if keys is None:
            keys = self._cache["keys"] = self._load()
        return keys

    def _load(self) -> frozenset[str]:
        if not self.path.exists():
            return frozenset()
        try:
            return parse_keys(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Error reading allowed keys file %s: %s", self.path, exc)
            return frozenset()
