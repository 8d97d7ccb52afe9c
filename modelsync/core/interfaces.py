from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class AbstractStorage(ABC):
    """
    Narrow durable key-value interface used to persist store state.

    Values are JSON-compatible (lists of dicts). Implementations must
    tolerate overlapping writes to the same key; the last write to complete
    wins.
    """

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Store a JSON-compatible value under a key, replacing any previous value."""
        pass

    @abstractmethod
    async def load(self, key: str) -> Optional[Any]:
        """Return the value stored under a key, or None."""
        pass

    @abstractmethod
    async def load_all(self) -> Dict[str, Any]:
        """Return every stored key/value pair."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Removing an unknown key is not an error."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key owned by this storage."""
        pass


class AbstractMetricStrategy(ABC):
    """
    Capability computing an optimistic aggregate from ground truth and slices.
    """

    @abstractmethod
    def calculate(
        self,
        ground_truth_value: Any,
        ground_truth_slice: List[Dict[str, Any]],
        optimistic_slice: List[Dict[str, Any]],
        field: Optional[str] = None,
    ) -> Any:
        """
        Calculate the optimistic metric value.

        Args:
            ground_truth_value: The scalar last returned by the server (may be None)
            ground_truth_slice: Entities as the server last reported them
            optimistic_slice: The same entities after the operation overlay
            field: The aggregated field, None for a plain count

        Returns:
            The optimistic value of the metric
        """
        pass
