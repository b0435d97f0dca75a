"""Per-call deadline carried into scanner and renderer calls.

Cancellation is cooperative: long-running collaborators check
``ctx.expired()`` between steps and size their network timeouts from
``ctx.remaining()``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class CallContext:
    deadline: float
    correlation_id: Optional[str] = None
    cancelled: bool = field(default=False)

    @classmethod
    def with_timeout(cls, seconds: float, correlation_id: Optional[str] = None) -> "CallContext":
        return cls(deadline=time.monotonic() + seconds, correlation_id=correlation_id)

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.cancelled or time.monotonic() >= self.deadline

    def cancel(self):
        self.cancelled = True
