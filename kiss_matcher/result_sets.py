"""Result containers filled by k-d tree searches, and search options."""

from __future__ import annotations

import sys
from bisect import bisect_right
from dataclasses import dataclass

__all__ = ["SearchParams", "KNNResultSet", "RadiusResultSet"]


@dataclass(frozen=True)
class SearchParams:
    """Options for a neighbour search.

    ``checks`` is ignored and kept only for interface compatibility,
    ``eps`` allows eps-approximate neighbours and ``sorted`` asks radius
    searches to order their results by ascending distance.
    """

    checks: int = 32
    eps: float = 0.0
    sorted: bool = True


class KNNResultSet:
    """Keeps the ``capacity`` closest points seen so far, ordered by distance.

    With ``first_match`` set, points at equal distance are ordered by
    ascending index; otherwise a later point goes after earlier ones with
    the same distance.
    """

    def __init__(self, capacity: int, *, first_match: bool = False) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self.capacity = capacity
        self.first_match = first_match
        self._items: list[tuple[float, int]] = []

    def __len__(self) -> int:
        return len(self._items)

    def clear(self) -> None:
        """Forget every point collected so far."""
        self._items.clear()

    def full(self) -> bool:
        """True once ``capacity`` points have been collected."""
        return len(self._items) == self.capacity

    def add_point(self, dist: float, index: int) -> bool:
        """Insert a candidate in order; always asks the search to continue."""
        if self.first_match:
            pos = bisect_right(self._items, (dist, index))
        else:
            pos = bisect_right(self._items, dist, key=lambda item: item[0])
        if pos < self.capacity:
            self._items.insert(pos, (dist, index))
            del self._items[self.capacity :]
        return True

    def worst_dist(self) -> float:
        """Distance of the last kept point, or the largest float until full."""
        if self.capacity and len(self._items) == self.capacity:
            return self._items[-1][0]
        return sys.float_info.max

    def results(self) -> list[tuple[int, float]]:
        """The kept ``(index, distance)`` pairs, nearest first."""
        return [(index, dist) for dist, index in self._items]


class RadiusResultSet:
    """Collects every point closer than ``radius``, in the order found."""

    def __init__(self, radius: float) -> None:
        self.radius = radius
        self._items: list[tuple[int, float]] = []

    def __len__(self) -> int:
        return len(self._items)

    def clear(self) -> None:
        """Forget every point collected so far."""
        self._items.clear()

    def full(self) -> bool:
        """A radius search never stops early."""
        return True

    def add_point(self, dist: float, index: int) -> bool:
        """Keep the point if it lies strictly inside the radius."""
        if dist < self.radius:
            self._items.append((index, dist))
        return True

    def worst_dist(self) -> float:
        """The search radius."""
        return self.radius

    def worst_item(self) -> tuple[int, float]:
        """The first collected ``(index, distance)`` pair with the largest distance."""
        if not self._items:
            raise RuntimeError(
                "Cannot invoke worst_item() on an empty list of results."
            )
        return max(self._items, key=lambda item: item[1])

    def results(self) -> list[tuple[int, float]]:
        """The collected ``(index, distance)`` pairs."""
        return list(self._items)