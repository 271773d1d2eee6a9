"""Distance functors used by the k-d tree indices.

Every metric compares a query point ``a`` with a dataset point ``b``, both
given as sequences of coordinates of the same length.  ``eval_metric``
returns the full (possibly squared) distance and ``accum_dist`` returns the
contribution of a single dimension, which the tree search uses to bound
distances to splitting planes.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

__all__ = [
    "L1Metric",
    "L2Metric",
    "L2SimpleMetric",
    "SO2Metric",
    "SO3Metric",
]

_GROUP = 4


def _check_lengths(a: Sequence[float], b: Sequence[float]) -> None:
    if len(a) != len(b):
        raise ValueError(f"point dimensions differ: {len(a)} != {len(b)}")


class L1Metric:
    """Manhattan distance, suited to high-dimensional data."""

    def eval_metric(
        self, a: Sequence[float], b: Sequence[float], worst_dist: float = -1.0
    ) -> float:
        """Sum of absolute differences.

        Full groups of four dimensions are accumulated first; after each group
        the partial sum is returned early once it exceeds a positive
        ``worst_dist``.
        """
        _check_lengths(a, b)
        size = len(a)
        full = size - size % _GROUP if size >= _GROUP else 0
        result = 0.0
        for start in range(0, full, _GROUP):
            result += sum(
                abs(x - y) for x, y in zip(a[start : start + _GROUP], b[start : start + _GROUP])
            )
            if worst_dist > 0 and result > worst_dist:
                return result
        result += sum(abs(x - y) for x, y in zip(a[full:], b[full:]))
        return result

    def accum_dist(self, a: float, b: float, dim: int = 0) -> float:
        """Distance contribution of one dimension."""
        return abs(a - b)


class L2Metric:
    """Squared Euclidean distance, suited to high-dimensional data."""

    def eval_metric(
        self, a: Sequence[float], b: Sequence[float], worst_dist: float = -1.0
    ) -> float:
        """Sum of squared differences, with the same early exit as :class:`L1Metric`."""
        _check_lengths(a, b)
        size = len(a)
        full = size - size % _GROUP if size >= _GROUP else 0
        result = 0.0
        for start in range(0, full, _GROUP):
            result += sum(
                (x - y) * (x - y)
                for x, y in zip(a[start : start + _GROUP], b[start : start + _GROUP])
            )
            if worst_dist > 0 and result > worst_dist:
                return result
        result += sum((x - y) * (x - y) for x, y in zip(a[full:], b[full:]))
        return result

    def accum_dist(self, a: float, b: float, dim: int = 0) -> float:
        """Squared difference of one dimension."""
        return (a - b) * (a - b)


class L2SimpleMetric:
    """Squared Euclidean distance for low-dimensional point clouds."""

    def eval_metric(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Sum of squared differences over all dimensions."""
        _check_lengths(a, b)
        return sum((x - y) * (x - y) for x, y in zip(a, b))

    def accum_dist(self, a: float, b: float, dim: int = 0) -> float:
        """Squared difference of one dimension."""
        return (a - b) * (a - b)


class SO2Metric:
    """Signed angular difference on the last coordinate.

    Input angles are assumed to lie in ``[-pi, pi]``.
    """

    def eval_metric(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Wrapped difference of the last coordinates of ``a`` and ``b``."""
        _check_lengths(a, b)
        if not a:
            raise ValueError("points must have at least one dimension")
        last = len(a) - 1
        return self.accum_dist(a[last], b[last], last)

    def accum_dist(self, a: float, b: float, dim: int = 0) -> float:
        """``b - a`` wrapped once into ``[-pi, pi]``."""
        result = b - a
        if result > math.pi:
            result -= 2 * math.pi
        elif result < -math.pi:
            result += 2 * math.pi
        return result


class SO3Metric:
    """Rotation distance evaluated as a squared Euclidean distance."""

    def __init__(self) -> None:
        self._l2 = L2SimpleMetric()

    def eval_metric(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Squared Euclidean distance between the two representations."""
        return self._l2.eval_metric(a, b)

    def accum_dist(self, a: float, b: float, dim: int = 0) -> float:
        """Squared difference of one dimension."""
        return self._l2.accum_dist(a, b, dim)