"""Ephemeral progress cache for in-flight jobs."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections import OrderedDict

from .types import ProcessingProgress

PROGRESS_KEY_PREFIX = "doc_progress:"
DEFAULT_TTL_SECONDS = 300


def progress_key(evidence_id: str) -> str:
    return f"{PROGRESS_KEY_PREFIX}{evidence_id}"


class ProgressCache(ABC):
    """Advisory store of the current step and percentage per evidence ID.

    Entries may vanish at any time. Callers treat a miss, or an exception,
    as "no progress info".
    """

    @abstractmethod
    def get(self, evidence_id: str) -> ProcessingProgress | None:
        ...

    @abstractmethod
    def set(self, progress: ProcessingProgress) -> None:
        ...

    @abstractmethod
    def delete(self, evidence_id: str) -> None:
        ...


class InMemoryProgressCache(ProgressCache):
    """Process-local cache with a per-entry TTL.

    Entries are kept in expiry order, so each write also drops expired
    entries from the front.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, ProcessingProgress]] = OrderedDict()

    def get(self, evidence_id: str) -> ProcessingProgress | None:
        key = progress_key(evidence_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, progress = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return progress

    def set(self, progress: ProcessingProgress) -> None:
        now = self._clock()
        key = progress_key(progress.evidence_id)
        self._entries.pop(key, None)
        self._entries[key] = (now + self.ttl_seconds, progress)
        self._sweep(now)

    def delete(self, evidence_id: str) -> None:
        self._entries.pop(progress_key(evidence_id), None)

    def _sweep(self, now: float) -> None:
        while self._entries:
            key, (expires_at, _) = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[key]

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)
