#!/usr/bin/env python3
"""Bounded automatic-retry bookkeeping for ODNAV.

All automatic recovery (interactive re-authentication after an expired
credential, automatic listing at startup) draws from a RetryBudget keyed by
operation class. Once a class is exhausted it stays exhausted until it is
reset, either by a success or by an explicit manual retry.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import RetryBudgetExhausted

logger = logging.getLogger(__name__)


# Operation classes
LIST_ROOT = "list_root"
LIST_CHILDREN = "list_children"
CREATE_FOLDER = "create_folder"
RENAME_FOLDER = "rename_folder"
DELETE_FOLDER = "delete_folder"
UPLOAD_FILE = "upload_file"
AUTO_FETCH = "auto_fetch"
SESSION_INTERACTION = "session_interaction"


@dataclass
class _Counter:
    used: int = 0
    started_at: Optional[float] = None
    exhausted: bool = False
    reason: str = ""


class RetryBudget:
    """Per-operation-class retry counter with a hard ceiling.

    Args:
        ceiling: Default number of automatic retries allowed per class
        window: Default wall-clock window in seconds (None = unlimited),
            measured from the first unit consumed
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(self, ceiling: int = 3, window: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        if ceiling < 0:
            raise ValueError("Retry ceiling cannot be negative")
        self.ceiling = ceiling
        self.window = window
        self._clock = clock
        self._limits: Dict[str, tuple] = {}
        self._counters: Dict[str, _Counter] = {}
        self._lock = threading.Lock()

    def configure(self, operation: str, ceiling: Optional[int] = None,
                  window: Optional[float] = None) -> None:
        """Override the ceiling and/or wall-clock window for one class."""
        self._limits[operation] = (
            self.ceiling if ceiling is None else ceiling,
            window if window is not None else self.window,
        )

    def _limits_for(self, operation: str) -> tuple:
        return self._limits.get(operation, (self.ceiling, self.window))

    def start(self, operation: str) -> None:
        """Open the wall-clock window for ``operation`` if it is not open yet."""
        with self._lock:
            counter = self._counters.setdefault(operation, _Counter())
            if counter.started_at is None:
                counter.started_at = self._clock()

    def consume(self, operation: str) -> int:
        """Consume one unit for ``operation``.

        Returns:
            Number of units used so far (including this one)

        Raises:
            RetryBudgetExhausted: If the ceiling or the wall-clock window is
                exceeded. The class then stays exhausted until reset.
        """
        ceiling, window = self._limits_for(operation)
        with self._lock:
            counter = self._counters.setdefault(operation, _Counter())
            now = self._clock()

            if counter.exhausted:
                raise RetryBudgetExhausted(operation, counter.used, counter.reason)

            if counter.started_at is None:
                counter.started_at = now

            if window is not None and now - counter.started_at > window:
                counter.exhausted = True
                counter.reason = f"wall-clock budget of {window:g}s exceeded"
            elif counter.used >= ceiling:
                counter.exhausted = True
                counter.reason = "retry limit reached"

            if counter.exhausted:
                logger.warning(f"Retry budget exhausted for {operation}: {counter.reason}")
                raise RetryBudgetExhausted(operation, counter.used, counter.reason)

            counter.used += 1
            logger.debug(f"Retry budget {operation}: {counter.used}/{ceiling} used")
            return counter.used

    def used(self, operation: str) -> int:
        with self._lock:
            counter = self._counters.get(operation)
            return counter.used if counter else 0

    def remaining(self, operation: str) -> int:
        ceiling, _ = self._limits_for(operation)
        if self.is_exhausted(operation):
            return 0
        return max(0, ceiling - self.used(operation))

    def is_exhausted(self, operation: str) -> bool:
        with self._lock:
            counter = self._counters.get(operation)
            return bool(counter and counter.exhausted)

    def reset(self, operation: Optional[str] = None) -> None:
        """Reset one operation class, or all of them."""
        with self._lock:
            if operation is None:
                self._counters.clear()
            else:
                self._counters.pop(operation, None)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        """Read-only view used by diagnostics."""
        with self._lock:
            return {
                op: {'used': c.used, 'exhausted': c.exhausted, 'reason': c.reason}
                for op, c in self._counters.items()
            }
