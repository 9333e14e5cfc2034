"""In-process cache-aside for the active stage list.

Only read paths use it. Mutations always validate against the database, and
every stage write calls ``invalidate()``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class StageSnapshot:
    id: UUID
    key: str
    name: str
    sequence: int
    description: str | None
    is_active: bool
    is_default: bool
    is_final: bool
    requires_approval: bool
    requires_vendor: bool
    requires_amount: bool
    requires_lock_box: bool

    @classmethod
    def from_row(cls, stage: Any) -> "StageSnapshot":
        return cls(
            id=stage.id,
            key=stage.key,
            name=stage.name,
            sequence=int(stage.sequence or 0),
            description=stage.description,
            is_active=bool(stage.is_active),
            is_default=bool(stage.is_default),
            is_final=bool(stage.is_final),
            requires_approval=bool(stage.requires_approval),
            requires_vendor=bool(stage.requires_vendor),
            requires_amount=bool(stage.requires_amount),
            requires_lock_box=bool(stage.requires_lock_box),
        )


class StageCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._stages: list[StageSnapshot] | None = None
        self._loaded_at = 0.0
        self._generation = 0

    def get(self, loader: Callable[[], list[Any]]) -> list[StageSnapshot]:
        with self._lock:
            if self._stages is not None and self._clock() - self._loaded_at < self._ttl:
                return list(self._stages)
            generation = self._generation
        stages = [StageSnapshot.from_row(row) for row in loader()]
        with self._lock:
            # A write invalidated the cache while loading; serve this load but do not keep it.
            if generation == self._generation:
                self._stages = stages
                self._loaded_at = self._clock()
        return list(stages)

    def invalidate(self) -> None:
        with self._lock:
            self._stages = None
            self._loaded_at = 0.0
            self._generation += 1
