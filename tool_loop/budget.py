"""Session-scoped tool execution budget."""

import threading
from typing import Any

from tool_loop.logging import get_logger

log = get_logger(__name__)


class ExecutionBudget:
    """Counts executed commands against a configured limit.

    The effective limit is the temporary limit when one is set, else the
    configured limit. ``executed`` only grows until ``reset()``.
    """

    def __init__(self, limit: int):
        if limit < 0:
            raise ValueError("Execution limit must be non-negative")
        self.limit = limit
        self.temporary_limit: int | None = None
        self._executed = 0
        self._lock = threading.Lock()

    @property
    def executed(self) -> int:
        return self._executed

    @property
    def effective_limit(self) -> int:
        return self.temporary_limit if self.temporary_limit is not None else self.limit

    def remaining(self) -> int:
        return max(0, self.effective_limit - self._executed)

    def would_exceed(self, next_count: int = 1) -> bool:
        """Whether running ``next_count`` more commands passes the limit."""
        return self._executed + next_count > self.effective_limit

    def is_exhausted(self) -> bool:
        return self._executed >= self.effective_limit

    def record(self, n: int = 1) -> int:
        """Count ``n`` executions and return the new total."""
        if n < 0:
            raise ValueError("Cannot record a negative execution count")
        with self._lock:
            previous = self._executed
            self._executed += n
            current = self._executed
        if previous < self.effective_limit <= current:
            log.info("Tool execution limit reached", executed=current, limit=self.effective_limit)
        return current

    def reset(self) -> None:
        """Start a new session: zero the counter and drop any temporary limit."""
        with self._lock:
            previous = self._executed
            self._executed = 0
            self.temporary_limit = None
        log.debug("Execution budget reset", previous=previous)

    def add_temporary_allowance(self, n: int) -> int:
        """Raise the effective limit by ``n`` for the rest of this session."""
        if n < 0:
            raise ValueError("Allowance must be non-negative")
        with self._lock:
            base = self.temporary_limit if self.temporary_limit is not None else self.limit
            self.temporary_limit = base + n
        log.info("Temporary tool allowance added", added=n, limit=self.temporary_limit)
        return self.temporary_limit

    def stats(self) -> dict[str, Any]:
        return {
            "executed": self._executed,
            "limit": self.effective_limit,
            "remaining": self.remaining(),
            "temporary_limit": self.temporary_limit,
        }
