# src/sigengine/audit.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Advisory:
    """
    A non-fatal finding that clinical review should see.

    code    : short machine tag, e.g. "LARGE_VOLUME"
    message : human readable explanation
    """
    code: str
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    message: str
    advisory: Optional[Advisory] = None

    def render(self) -> str:
        return f"[{self.timestamp.isoformat()}] {self.message}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditTrail:
    """
    Append-only record of every decision a builder makes.

    Advisories are stored both as entries (so `explain()` shows them in
    order) and in a separate list so callers can check them without
    parsing text.
    """

    def __init__(self, owner: str, clock: Callable[[], datetime] = _utcnow):
        self.owner = owner
        self._clock = clock
        self._entries: List[AuditEntry] = []
        self._advisories: List[Advisory] = []

    def now(self) -> datetime:
        return self._clock()

    def record(self, message: str) -> None:
        self._entries.append(AuditEntry(self._clock(), message))
        logger.debug("%s: %s", self.owner, message)

    def advise(self, advisory: Advisory) -> None:
        self._advisories.append(advisory)
        self._entries.append(AuditEntry(self._clock(), f"Warning: {advisory.message}", advisory))
        logger.warning("%s: %s", self.owner, advisory.message)

    def extend(self, advisories) -> None:
        for a in advisories:
            self.advise(a)

    @property
    def entries(self) -> Tuple[AuditEntry, ...]:
        return tuple(self._entries)

    @property
    def advisories(self) -> Tuple[Advisory, ...]:
        return tuple(self._advisories)

    def lines(self) -> List[str]:
        return [e.render() for e in self._entries]

    def text(self) -> str:
        return "\n".join(self.lines())

    def __len__(self) -> int:
        return len(self._entries)
