"""
Result collector.

Accumulates successful call values in completion order across runs.
"""

import logging
from typing import Callable, List, Tuple, Union

logger = logging.getLogger(__name__)

Value = Union[int, float]


class ResultCollector:
    """Ordered, append-only sequence of successful call values."""

    def __init__(self):
        self._values: List[Value] = []
        self._subscribers: List[Callable[[Value], None]] = []

    def append(self, value: Value) -> None:
        """Append a value and notify subscribers."""
        self._values.append(value)
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"Result subscriber failed: {str(e)}")

    def snapshot(self) -> Tuple[Value, ...]:
        """Return the current sequence without blocking."""
        return tuple(self._values)

    def subscribe(self, callback: Callable[[Value], None]) -> Callable[[], None]:
        """
        Register a sink notified with each appended value.

        Args:
            callback: Called with every value appended after registration

        Returns:
            Callable[[], None]: Function that removes the subscription
        """
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)
