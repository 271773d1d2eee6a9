import io
import struct

import numpy as np
import pytest

from kiss_matcher.kdtree_index import KDTreeIndex
from kiss_matcher.metrics import L1Metric
from kiss_matcher.result_sets import KNNResultSet


def _cloud(n=300, dim=3, seed=7):
    rng = np.random.default_rng(seed)
    return rng.uniform(-5.0, 5.0, size=(n, dim))


def _built(points, **kwargs):
    index = KDTreeIndex(points.tolist(), **kwargs)
    index.build_index()
    return index


def _oracle_sq(points, query):
    return ((points - np.asarray(query)) ** 2).sum(axis=1)


@pytest.mark.parametrize("leaf_max_size", [1, 3, 10, 50])
def test_knn_matches_brute_force(leaf_max_size):
    points = _cloud()
    index = _built(points, leaf_max_size=leaf_max_size)
    for query in _cloud(n=20, seed=11):
        found = index.knn_search(query.tolist(), 5)
        expected = np.argsort(_oracle_sq(points, query))[:5]
        assert [i for i, _ in found] == expected.tolist()
        assert [d for _, d in found] == pytest.approx(
            _oracle_sq(points, query)[expected].tolist()
        )


def test_radius_search_matches_brute_force():
    points = _cloud()
    index = _built(points)
    query = [0.5, -0.5, 1.0]
    radius = 4.0
    found = index.radius_search(query, radius)
    sq = _oracle_sq(points, query)
    assert {i for i, _ in found} == set(np.nonzero(sq < radius)[0].tolist())
    dists = [d for _, d in found]
    assert dists == sorted(dists)


def test_radius_search_unsorted_has_same_content():
    points = _cloud()
    index = _built(points)
    query = [1.0, 1.0, 1.0]
    assert sorted(index.radius_search(query, 6.0, sorted=False)) == sorted(
        index.radius_search(query, 6.0)
    )


def test_point_in_dataset_is_its_own_nearest():
    points = _cloud()
    index = _built(points)
    idx, dist = index.knn_search(points[42].tolist(), 1)[0]
    assert idx == 42
    assert dist == 0.0


def test_k_larger_than_dataset_returns_everything():
    points = _cloud(n=7)
    index = _built(points)
    found = index.knn_search([0.0, 0.0, 0.0], 20)
    assert sorted(i for i, _ in found) == list(range(7))


def test_find_neighbors_reports_full_result():
    points = _cloud(n=30)
    index = _built(points)
    result = KNNResultSet(4)
    assert index.find_neighbors(result, [0.0, 0.0, 0.0]) is True
    assert len(result) == 4


def test_empty_dataset_finds_nothing():
    index = KDTreeIndex([], dim=3)
    index.build_index()
    assert index.knn_search([0.0, 0.0, 0.0], 3) == []
    assert index.find_neighbors(KNNResultSet(1), [0.0, 0.0, 0.0]) is False


def test_search_before_build_raises():
    index = KDTreeIndex(_cloud(n=5).tolist())
    with pytest.raises(RuntimeError):
        index.knn_search([0.0, 0.0, 0.0], 1)


def test_short_query_raises():
    index = _built(_cloud(n=5))
    with pytest.raises(ValueError):
        index.knn_search([0.0, 0.0], 1)


def test_extra_coordinates_are_ignored():
    points = _cloud(n=50)
    homogeneous = np.hstack([points, np.ones((50, 1))])
    index = KDTreeIndex(homogeneous.tolist(), dim=3)
    index.build_index()
    plain = _built(points)
    query = [0.2, 0.3, 0.4, 1.0]
    assert index.knn_search(query, 3) == plain.knn_search(query[:3], 3)


def test_identical_points_all_found():
    points = np.ones((40, 3))
    index = _built(points, leaf_max_size=2)
    found = index.radius_search([1.0, 1.0, 1.0], 0.5)
    assert sorted(i for i, _ in found) == list(range(40))


def test_l1_metric_knn():
    points = _cloud()
    index = _built(points, metric=L1Metric())
    query = [0.1, 0.2, -0.3]
    l1 = np.abs(points - np.asarray(query)).sum(axis=1)
    found = index.knn_search(query, 4)
    assert [i for i, _ in found] == np.argsort(l1)[:4].tolist()


def test_approximate_search_is_never_closer_than_exact():
    points = _cloud()
    index = _built(points)
    query = [0.0, 1.0, 2.0]
    exact = index.knn_search(query, 5)
    result = KNNResultSet(5)
    index.find_neighbors(result, query, eps=0.5)
    approx = result.results()
    assert len(approx) == 5
    assert approx[-1][1] >= exact[-1][1]


def test_save_and_load_round_trip():
    points = _cloud()
    index = _built(points, leaf_max_size=4)
    stream = io.BytesIO()
    index.save_index(stream)
    data = stream.getvalue()
    assert data[:8] == struct.pack("<Q", len(points))

    restored = KDTreeIndex(points.tolist())
    restored.load_index(io.BytesIO(data))
    assert restored.leaf_max_size == 4
    for query in _cloud(n=10, seed=3):
        assert restored.knn_search(query.tolist(), 6) == index.knn_search(
            query.tolist(), 6
        )


def test_load_truncated_stream_raises():
    points = _cloud(n=50)
    index = _built(points)
    stream = io.BytesIO()
    index.save_index(stream)
    truncated = stream.getvalue()[:-5]
    with pytest.raises(EOFError):
        KDTreeIndex(points.tolist()).load_index(io.BytesIO(truncated))


def test_rebuild_after_dataset_change():
    points = _cloud(n=20).tolist()
    index = KDTreeIndex(points)
    index.build_index()
    points.append([100.0, 100.0, 100.0])
    index.build_index()
    assert len(index) == 21
    assert index.knn_search([99.0, 99.0, 99.0], 1)[0][0] == 20