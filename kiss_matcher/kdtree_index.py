"""Static k-d tree index over a point dataset."""

from __future__ import annotations

import struct
from collections.abc import Sequence
from dataclasses import dataclass
from typing import BinaryIO, Protocol, Union

from kiss_matcher.metrics import L2SimpleMetric
from kiss_matcher.result_sets import KNNResultSet, RadiusResultSet

__all__ = ["KDTreeIndex"]

_EPS = 0.00001

_SIZE = struct.Struct("<Q")
_DIM = struct.Struct("<i")
_INTERVAL = struct.Struct("<dd")
_INDEX = struct.Struct("<I")
_TAG = struct.Struct("<B")
_LEAF = struct.Struct("<QQ")
_BRANCH = struct.Struct("<idd")

_TAG_LEAF = 0
_TAG_BRANCH = 1


class _ResultSet(Protocol):
    def add_point(self, dist: float, index: int) -> bool: ...

    def worst_dist(self) -> float: ...

    def full(self) -> bool: ...


class _Metric(Protocol):
    def eval_metric(self, a: Sequence[float], b: Sequence[float]) -> float: ...

    def accum_dist(self, a: float, b: float, dim: int = 0) -> float: ...


@dataclass(slots=True)
class _Leaf:
    left: int
    right: int


@dataclass(slots=True)
class _Branch:
    divfeat: int
    divlow: float
    divhigh: float
    child1: "_Node"
    child2: "_Node"


_Node = Union[_Leaf, _Branch]


def _read(stream: BinaryIO, layout: struct.Struct) -> tuple:
    data = stream.read(layout.size)
    if len(data) != layout.size:
        raise EOFError("Cannot read from file")
    return layout.unpack(data)


class KDTreeIndex:
    """A k-d tree over ``dataset``, a sequence of points.

    The index keeps a reference to the dataset; :meth:`build_index` must be
    called before searching and again whenever the dataset changes.  Points
    may have more coordinates than ``dim``; only the first ``dim`` are used.
    Distances are those of ``metric`` (squared Euclidean by default).
    """

    def __init__(
        self,
        dataset: Sequence[Sequence[float]],
        dim: int | None = None,
        *,
        leaf_max_size: int = 10,
        metric: _Metric | None = None,
    ) -> None:
        if leaf_max_size < 1:
            raise ValueError("leaf_max_size must be at least 1")
        self.dataset = dataset
        if dim is None:
            dim = len(dataset[0]) if len(dataset) else 0
        self.dim = dim
        self.leaf_max_size = leaf_max_size
        self.metric: _Metric = metric if metric is not None else L2SimpleMetric()
        self.root_node: _Node | None = None
        self.root_bbox: list[list[float]] = []
        self.size_at_index_build = 0
        self._points: list[tuple[float, ...]] = []
        self._vind: list[int] = []
        self._init_vind()

    def __len__(self) -> int:
        return self._size

    def _init_vind(self) -> None:
        self._points = [
            tuple(float(c) for c in point[: self.dim]) for point in self.dataset
        ]
        self._size = len(self._points)
        self._vind = list(range(self._size))

    def build_index(self) -> None:
        """(Re)build the tree from the current contents of the dataset."""
        self._init_vind()
        self.root_node = None
        self.size_at_index_build = self._size
        if self._size == 0:
            return
        self.root_bbox = self._compute_bounding_box()
        self.root_node = self._divide_tree(0, self._size, self.root_bbox)

    def _compute_bounding_box(self) -> list[list[float]]:
        if not self._points:
            raise RuntimeError("compute_bounding_box() called but no data points found.")
        return [
            [min(p[d] for p in self._points), max(p[d] for p in self._points)]
            for d in range(self.dim)
        ]

    def _min_max(self, ind: int, count: int, element: int) -> tuple[float, float]:
        values = [self._points[i][element] for i in self._vind[ind : ind + count]]
        return min(values), max(values)

    def _divide_tree(self, left: int, right: int, bbox: list[list[float]]) -> _Node:
        if right - left <= self.leaf_max_size:
            points = [self._points[i] for i in self._vind[left:right]]
            for d in range(self.dim):
                coords = [p[d] for p in points]
                bbox[d][0] = min(coords)
                bbox[d][1] = max(coords)
            return _Leaf(left, right)

        idx, cutfeat, cutval = self._middle_split(left, right - left, bbox)

        left_bbox = [list(interval) for interval in bbox]
        left_bbox[cutfeat][1] = cutval
        child1 = self._divide_tree(left, left + idx, left_bbox)

        right_bbox = [list(interval) for interval in bbox]
        right_bbox[cutfeat][0] = cutval
        child2 = self._divide_tree(left + idx, right, right_bbox)

        node = _Branch(
            cutfeat, left_bbox[cutfeat][1], right_bbox[cutfeat][0], child1, child2
        )
        for d in range(self.dim):
            bbox[d][0] = min(left_bbox[d][0], right_bbox[d][0])
            bbox[d][1] = max(left_bbox[d][1], right_bbox[d][1])
        return node

    def _middle_split(
        self, ind: int, count: int, bbox: list[list[float]]
    ) -> tuple[int, int, float]:
        max_span = max(high - low for low, high in bbox)
        max_spread = -1.0
        cutfeat = 0
        for d, (low, high) in enumerate(bbox):
            if high - low > (1 - _EPS) * max_span:
                min_elem, max_elem = self._min_max(ind, count, d)
                spread = max_elem - min_elem
                if spread > max_spread:
                    cutfeat = d
                    max_spread = spread

        split_val = (bbox[cutfeat][0] + bbox[cutfeat][1]) / 2
        min_elem, max_elem = self._min_max(ind, count, cutfeat)
        cutval = min(max(split_val, min_elem), max_elem)

        lim1, lim2 = self._plane_split(ind, count, cutfeat, cutval)
        half = count // 2
        if lim1 > half:
            index = lim1
        elif lim2 < half:
            index = lim2
        else:
            index = half
        return index, cutfeat, cutval

    def _plane_split(
        self, ind: int, count: int, cutfeat: int, cutval: float
    ) -> tuple[int, int]:
        """Reorder the slice so values below, equal to and above ``cutval`` follow each other."""
        vind = self._vind

        def value(offset: int) -> float:
            return self._points[vind[ind + offset]][cutfeat]

        def partition(left: int, goes_left) -> int:
            right = count - 1
            while True:
                while left <= right and goes_left(value(left)):
                    left += 1
                while right and left <= right and not goes_left(value(right)):
                    right -= 1
                if left > right or not right:
                    return left
                vind[ind + left], vind[ind + right] = vind[ind + right], vind[ind + left]
                left += 1
                right -= 1

        lim1 = partition(0, lambda v: v < cutval)
        lim2 = partition(lim1, lambda v: v <= cutval)
        return lim1, lim2

    def _query_vector(self, query: Sequence[float]) -> tuple[float, ...]:
        if len(query) < self.dim:
            raise ValueError(
                f"query has {len(query)} coordinates, the index needs {self.dim}"
            )
        return tuple(float(c) for c in query[: self.dim])

    def _initial_distances(self, vec: tuple[float, ...]) -> tuple[float, list[float]]:
        dists = [0.0] * self.dim
        distsq = 0.0
        for d, (low, high) in enumerate(self.root_bbox):
            if vec[d] < low:
                dists[d] = self.metric.accum_dist(vec[d], low, d)
                distsq += dists[d]
            if vec[d] > high:
                dists[d] = self.metric.accum_dist(vec[d], high, d)
                distsq += dists[d]
        return distsq, dists

    def find_neighbors(
        self, result: _ResultSet, query: Sequence[float], eps: float = 0.0
    ) -> bool:
        """Feed the points near ``query`` into ``result``; return ``result.full()``."""
        vec = self._query_vector(query)
        if self._size == 0:
            return False
        if self.root_node is None:
            raise RuntimeError("find_neighbors() called before building the index.")
        distsq, dists = self._initial_distances(vec)
        self._search_level(result, vec, self.root_node, distsq, dists, 1 + eps)
        return result.full()

    def _search_level(
        self,
        result: _ResultSet,
        vec: tuple[float, ...],
        node: _Node,
        mindistsq: float,
        dists: list[float],
        eps_error: float,
    ) -> bool:
        if isinstance(node, _Leaf):
            worst = result.worst_dist()
            for index in self._vind[node.left : node.right]:
                dist = self.metric.eval_metric(vec, self._points[index])
                if dist < worst and not result.add_point(dist, index):
                    return False
            return True

        idx = node.divfeat
        val = vec[idx]
        if (val - node.divlow) + (val - node.divhigh) < 0:
            best, other = node.child1, node.child2
            cut_dist = self.metric.accum_dist(val, node.divhigh, idx)
        else:
            best, other = node.child2, node.child1
            cut_dist = self.metric.accum_dist(val, node.divlow, idx)

        if not self._search_level(result, vec, best, mindistsq, dists, eps_error):
            return False

        saved = dists[idx]
        mindistsq = mindistsq + cut_dist - saved
        dists[idx] = cut_dist
        if mindistsq * eps_error <= result.worst_dist():
            if not self._search_level(result, vec, other, mindistsq, dists, eps_error):
                return False
        dists[idx] = saved
        return True

    def knn_search(self, query: Sequence[float], k: int) -> list[tuple[int, float]]:
        """The ``k`` nearest ``(index, distance)`` pairs, nearest first.

        Fewer pairs come back only when the dataset holds fewer than ``k`` points.
        """
        result = KNNResultSet(k)
        self.find_neighbors(result, query)
        return result.results()

    def radius_search(
        self, query: Sequence[float], radius: float, sorted: bool = True
    ) -> list[tuple[int, float]]:
        """All ``(index, distance)`` pairs with distance strictly below ``radius``.

        ``radius`` is in the metric's units (a squared distance for L2).
        """
        result = RadiusResultSet(radius)
        self.find_neighbors(result, query)
        items = result.results()
        if sorted:
            items.sort(key=lambda item: item[1])
        return items

    def save_index(self, stream: BinaryIO) -> None:
        """Write the tree to a binary stream; the points themselves are not stored."""
        stream.write(_SIZE.pack(self._size))
        stream.write(_DIM.pack(self.dim))
        for low, high in self.root_bbox:
            stream.write(_INTERVAL.pack(low, high))
        stream.write(_SIZE.pack(self.leaf_max_size))
        stream.write(_SIZE.pack(len(self._vind)))
        stream.write(struct.pack(f"<{len(self._vind)}I", *self._vind))
        if self.root_node is not None:
            self._save_tree(stream, self.root_node)

    def _save_tree(self, stream: BinaryIO, node: _Node) -> None:
        if isinstance(node, _Leaf):
            stream.write(_TAG.pack(_TAG_LEAF))
            stream.write(_LEAF.pack(node.left, node.right))
            return
        stream.write(_TAG.pack(_TAG_BRANCH))
        stream.write(_BRANCH.pack(node.divfeat, node.divlow, node.divhigh))
        self._save_tree(stream, node.child1)
        self._save_tree(stream, node.child2)

    def load_index(self, stream: BinaryIO) -> None:
        """Read a tree written by :meth:`save_index` for the same dataset."""
        (size,) = _read(stream, _SIZE)
        (dim,) = _read(stream, _DIM)
        bbox = [list(_read(stream, _INTERVAL)) for _ in range(dim)]
        (leaf_max_size,) = _read(stream, _SIZE)
        (count,) = _read(stream, _SIZE)
        vind = [_read(stream, _INDEX)[0] for _ in range(count)]
        root = self._load_tree(stream) if size else None

        self.dim = dim
        self.leaf_max_size = leaf_max_size
        self._points = [
            tuple(float(c) for c in point[:dim]) for point in self.dataset
        ]
        self._size = size
        self.size_at_index_build = size
        self.root_bbox = bbox
        self._vind = vind
        self.root_node = root

    def _load_tree(self, stream: BinaryIO) -> _Node:
        (tag,) = _read(stream, _TAG)
        if tag == _TAG_LEAF:
            left, right = _read(stream, _LEAF)
            return _Leaf(left, right)
        if tag != _TAG_BRANCH:
            raise ValueError(f"unknown node tag {tag}")
        divfeat, divlow, divhigh = _read(stream, _BRANCH)
        child1 = self._load_tree(stream)
        child2 = self._load_tree(stream)
        return _Branch(divfeat, divlow, divhigh, child1, child2)