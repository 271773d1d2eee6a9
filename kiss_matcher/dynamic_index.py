"""Dynamic k-d tree index and a k-d tree over the rows or columns of a matrix."""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any, Protocol

import numpy as np

from kiss_matcher.kdtree_index import KDTreeIndex
from kiss_matcher.metrics import L2Metric, L2SimpleMetric
from kiss_matcher.result_sets import KNNResultSet, RadiusResultSet

__all__ = ["DynamicKDTreeIndex", "MatrixKDTree"]

_REMOVED = -1


class _ResultSet(Protocol):
    def add_point(self, dist: float, index: int) -> bool: ...

    def worst_dist(self) -> float: ...

    def full(self) -> bool: ...


class _SubTreeResults:
    """Maps a sub-tree's local indices to dataset indices and drops removed points."""

    def __init__(
        self, result: _ResultSet, members: Sequence[int], tree_index: Sequence[int]
    ) -> None:
        self._result = result
        self._members = members
        self._tree_index = tree_index

    def add_point(self, dist: float, index: int) -> bool:
        global_index = self._members[index]
        if self._tree_index[global_index] == _REMOVED:
            return True
        return self._result.add_point(dist, global_index)

    def worst_dist(self) -> float:
        return self._result.worst_dist()

    def full(self) -> bool:
        return self._result.full()


class _SubTree:
    """One of the static trees of the logarithmic structure."""

    def __init__(self, dim: int, leaf_max_size: int, metric: Any) -> None:
        self.dim = dim
        self.leaf_max_size = leaf_max_size
        self.metric = metric
        self.members: list[int] = []
        self.index: KDTreeIndex | None = None

    def clear(self) -> None:
        self.members = []
        self.index = None

    def build(self, dataset: Sequence[Sequence[float]]) -> None:
        points = [dataset[i] for i in self.members]
        self.index = KDTreeIndex(
            points, self.dim, leaf_max_size=self.leaf_max_size, metric=self.metric
        )
        self.index.build_index()


class DynamicKDTreeIndex:
    """A k-d tree that supports adding and lazily removing points.

    Points live in ``dataset``, a growable sequence owned by the caller.
    They are spread over up to ``log2(maximum_point_count)`` static trees
    whose sizes are powers of two; adding a point merges the smaller trees
    into the first empty one.  Removed points stay in their tree but are
    never reported by searches.
    """

    def __init__(
        self,
        dataset: Sequence[Sequence[float]],
        dim: int | None = None,
        *,
        leaf_max_size: int = 10,
        maximum_point_count: int = 1_000_000_000,
        metric: Any = None,
    ) -> None:
        if leaf_max_size < 1:
            raise ValueError("leaf_max_size must be at least 1")
        if maximum_point_count < 1:
            raise ValueError("maximum_point_count must be at least 1")
        if dim is None:
            if not len(dataset):
                raise ValueError("dim must be given for an empty dataset")
            dim = len(dataset[0])
        self.dataset = dataset
        self.dim = dim
        self.leaf_max_size = leaf_max_size
        self.metric = metric if metric is not None else L2SimpleMetric()
        self.tree_count = int(math.log2(maximum_point_count))
        self._point_count = 0
        self._tree_index: list[int] = []
        self._trees = [
            _SubTree(dim, leaf_max_size, self.metric) for _ in range(self.tree_count)
        ]
        if len(dataset) > 0:
            self.add_points(0, len(dataset) - 1)

    def __len__(self) -> int:
        return self._point_count

    @staticmethod
    def _first_zero_bit(num: int) -> int:
        pos = 0
        while num & 1:
            num >>= 1
            pos += 1
        return pos

    def add_points(self, start: int, end: int) -> None:
        """Insert the dataset points with indices ``start`` to ``end`` inclusive."""
        if end < start:
            raise ValueError("end must not be smaller than start")
        if start < 0 or end >= len(self.dataset):
            raise IndexError("point indices lie outside the dataset")
        self._tree_index.extend([0] * (end - start + 1))
        for idx in range(start, end + 1):
            pos = self._first_zero_bit(self._point_count)
            if pos >= self.tree_count:
                raise OverflowError("maximum point count of the index exceeded")
            target = self._trees[pos]
            target.members = []
            self._tree_index[self._point_count] = pos
            for tree in self._trees[:pos]:
                for member in tree.members:
                    target.members.append(member)
                    if self._tree_index[member] != _REMOVED:
                        self._tree_index[member] = pos
                tree.clear()
            target.members.append(idx)
            target.build(self.dataset)
            self._point_count += 1

    def remove_point(self, idx: int) -> None:
        """Mark a point as removed; unknown indices are ignored."""
        if idx < 0 or idx >= self._point_count:
            return
        self._tree_index[idx] = _REMOVED

    def find_neighbors(
        self, result: _ResultSet, query: Sequence[float], eps: float = 0.0
    ) -> bool:
        """Feed the points near ``query`` from every tree into ``result``."""
        for tree in self._trees:
            if tree.index is None or not tree.members:
                continue
            tree.index.find_neighbors(
                _SubTreeResults(result, tree.members, self._tree_index), query, eps
            )
        return result.full()

    def knn_search(self, query: Sequence[float], k: int) -> list[tuple[int, float]]:
        """The ``k`` nearest live ``(index, distance)`` pairs, nearest first."""
        result = KNNResultSet(k)
        self.find_neighbors(result, query)
        return result.results()

    def radius_search(
        self, query: Sequence[float], radius: float, sorted: bool = True
    ) -> list[tuple[int, float]]:
        """All live ``(index, distance)`` pairs with distance strictly below ``radius``."""
        result = RadiusResultSet(radius)
        self.find_neighbors(result, query)
        items = result.results()
        if sorted:
            items.sort(key=lambda item: item[1])
        return items


class MatrixKDTree:
    """A k-d tree over a 2-D matrix whose rows (or columns) are the points.

    The tree is built at construction.  Distances default to squared
    Euclidean distances.
    """

    def __init__(
        self,
        dimensionality: int,
        matrix: Any,
        leaf_max_size: int = 10,
        *,
        row_major: bool = True,
        metric: Any = None,
    ) -> None:
        data = np.asarray(matrix, dtype=float)
        if data.ndim != 2:
            raise ValueError("matrix must be two-dimensional")
        dims = data.shape[1] if row_major else data.shape[0]
        if dims != dimensionality:
            raise ValueError(
                "'dimensionality' must match the point length of the data matrix"
            )
        self.matrix = data
        self.row_major = row_major
        points = data.tolist() if row_major else data.T.tolist()
        self.index = KDTreeIndex(
            points,
            dims,
            leaf_max_size=leaf_max_size,
            metric=metric if metric is not None else L2Metric(),
        )
        self.index.build_index()

    def __len__(self) -> int:
        return len(self.index)

    def query(
        self, query_point: Sequence[float], num_closest: int
    ) -> list[tuple[int, float]]:
        """The ``num_closest`` nearest ``(index, distance)`` pairs, nearest first."""
        result = KNNResultSet(num_closest)
        self.index.find_neighbors(result, query_point)
        return result.results()