"""
Apply context.

Run-scoped state shared by every action of one apply call.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApplyContext:
    """
    Context for one apply run.

    Provides:
    - Unique run ID for log correlation and audit
    - Cooperative cancellation: `cancel()` stops new actions from
      starting while in-flight actions finish
    - Per-resource timings
    """

    run_id: str = field(default_factory=lambda: uuid4().hex)
    environment: str = "default"
    started_at: datetime = field(default_factory=_utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)
    _cancelled: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def elapsed_ms(self) -> float:
        return (_utc_now() - self.started_at).total_seconds() * 1000

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def record_timing(self, resource: str, duration_ms: float) -> None:
        self.timings[resource] = duration_ms
