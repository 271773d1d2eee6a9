import random

import numpy as np
import pytest

from kiss_matcher.dynamic_index import DynamicKDTreeIndex, MatrixKDTree
from kiss_matcher.result_sets import KNNResultSet


def _points(n, seed=7, dim=3):
    rng = random.Random(seed)
    return [[rng.uniform(-10, 10) for _ in range(dim)] for _ in range(n)]


def _sq(a, b):
    return sum((x - y) ** 2 for x, y in zip(a, b))


def _brute_knn(points, query, k, skip=()):
    pairs = sorted(
        (_sq(query, p), i) for i, p in enumerate(points) if i not in skip
    )
    return [i for _, i in pairs[:k]]


@pytest.mark.parametrize("n", [1, 2, 3, 7, 16, 45])
def test_knn_matches_brute_force(n):
    pts = _points(n)
    index = DynamicKDTreeIndex(pts, leaf_max_size=2)
    assert len(index) == n
    for query in _points(5, seed=99):
        found = index.knn_search(query, 4)
        assert [i for i, _ in found] == _brute_knn(pts, query, 4)
        for i, d in found:
            assert d == pytest.approx(_sq(query, pts[i]))


def test_radius_search_matches_brute_force():
    pts = _points(40)
    index = DynamicKDTreeIndex(pts, leaf_max_size=3)
    query = [0.0, 0.0, 0.0]
    radius = 40.0
    found = index.radius_search(query, radius)
    expected = {i for i, p in enumerate(pts) if _sq(query, p) < radius}
    assert {i for i, _ in found} == expected
    dists = [d for _, d in found]
    assert dists == sorted(dists)


def test_removed_point_is_not_reported():
    pts = _points(20)
    index = DynamicKDTreeIndex(pts)
    query = pts[5]
    assert index.knn_search(query, 1)[0][0] == 5
    index.remove_point(5)
    found = index.knn_search(query, 3)
    assert 5 not in [i for i, _ in found]
    assert [i for i, _ in found] == _brute_knn(pts, query, 3, skip={5})


def test_removed_point_stays_removed_after_merges():
    pts = _points(3)
    index = DynamicKDTreeIndex(pts)
    index.remove_point(0)
    pts.extend(_points(10, seed=3))
    index.add_points(3, 12)
    assert 0 not in [i for i, _ in index.radius_search(pts[0], 1e9)]
    assert len(index.radius_search(pts[0], 1e9)) == 12


def test_remove_out_of_range_is_ignored():
    pts = _points(6)
    index = DynamicKDTreeIndex(pts)
    index.remove_point(100)
    index.remove_point(-1)
    assert len(index.radius_search([0, 0, 0], 1e9)) == 6


def test_incremental_additions_are_found():
    pts = []
    index = DynamicKDTreeIndex(pts, dim=2)
    assert index.knn_search([0.0, 0.0], 3) == []
    for i in range(10):
        pts.append([float(i), float(i)])
        index.add_points(i, i)
        nearest = index.knn_search([float(i), float(i)], 1)
        assert nearest == [(i, 0.0)]
    assert len(index) == 10


def test_find_neighbors_reports_fullness():
    pts = _points(5)
    index = DynamicKDTreeIndex(pts)
    assert index.find_neighbors(KNNResultSet(3), [0, 0, 0]) is True
    assert index.find_neighbors(KNNResultSet(8), [0, 0, 0]) is False


def test_exceeding_maximum_point_count_raises():
    with pytest.raises(OverflowError):
        DynamicKDTreeIndex(_points(4), maximum_point_count=4)
    index = DynamicKDTreeIndex(_points(3), maximum_point_count=4)
    assert len(index) == 3


def test_invalid_ranges_raise():
    pts = _points(3)
    index = DynamicKDTreeIndex(pts)
    with pytest.raises(ValueError):
        index.add_points(2, 1)
    with pytest.raises(IndexError):
        index.add_points(3, 5)
    with pytest.raises(ValueError):
        DynamicKDTreeIndex([])


def test_matrix_tree_row_and_column_major_agree():
    data = np.array(_points(30, seed=11))
    rows = MatrixKDTree(3, data, 4)
    cols = MatrixKDTree(3, data.T, 4, row_major=False)
    assert len(rows) == len(cols) == 30
    for query in _points(4, seed=12):
        expected = _brute_knn(data.tolist(), query, 5)
        assert [i for i, _ in rows.query(query, 5)] == expected
        assert [i for i, _ in cols.query(query, 5)] == expected


def test_matrix_tree_dimension_mismatch_raises():
    with pytest.raises(ValueError):
        MatrixKDTree(2, np.zeros((4, 3)))
    with pytest.raises(ValueError):
        MatrixKDTree(3, np.zeros(3))


def test_matrix_tree_query_fewer_points_than_requested():
    tree = MatrixKDTree(2, [[0.0, 0.0], [3.0, 4.0]])
    found = tree.query([0.0, 0.0], 5)
    assert found == [(0, 0.0), (1, 25.0)]