# kiss_matcher

Robust registration of 3-D point correspondences and a k-d tree for
nearest-neighbour search. It depends only on NumPy.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Registration

`RobustRegistrationSolver` is in `kiss_matcher.registration`. It takes two
3×N arrays of corresponding points and estimates the rotation and translation
with `dst = rotation @ src + translation`.

The steps are:

1. It pairs each point with the next one, and the last point with the first.
   The differences between paired points give translation-invariant
   measurements.
2. It solves for rotation on those measurements with graduated non-convexity
   over truncated least squares. Two rotation solvers are available:
   - `RotationEstimationAlgorithm.GNC_TLS`, which estimates a full 3-D rotation.
   - `RotationEstimationAlgorithm.QUATRO`, which estimates yaw only.
3. It solves for translation with a scalar truncated least squares estimate on
   each axis.

```python
import numpy as np
from kiss_matcher.registration import (
    RegistrationParams,
    RobustRegistrationSolver,
    RotationEstimationAlgorithm,
)

params = RegistrationParams(
    noise_bound=0.05,
    rotation_estimation_algorithm=RotationEstimationAlgorithm.QUATRO,
)
solver = RobustRegistrationSolver(params)
solution = solver.solve(src, dst)      # src, dst: arrays of shape (3, N)

if solution.valid:
    print(solution.rotation)           # 3x3 matrix
    print(solution.translation)        # length-3 vector
print(solver.input_ordered_translation_inliers())
```

`solve` returns an invalid default `RegistrationSolution` when fewer than two
measurements survive rotation estimation. After a run, the solver keeps these
results:

- `rotation_inliers`
- `rotation_inliers_mask`
- `translation_inliers`
- `translation_inliers_mask`
- `gnc_rotation_cost_at_termination`

`compute_tims(v)` returns the differences for every pair `i < j` together with
a 2-row index map. `reset(params)` rebuilds the estimators and clears earlier
results.

The `RegistrationParams` fields and their defaults are:

| Field | Default |
| --- | --- |
| `noise_bound` | 0.01 |
| `cbar2` | 1.0 |
| `rotation_estimation_algorithm` | `GNC_TLS` |
| `rotation_gnc_factor` | 1.4 |
| `rotation_max_iterations` | 100 |
| `rotation_cost_threshold` | 1e-6 |

The building blocks are in `kiss_matcher.solvers` and can be used on their own:

- `ScalarTLSEstimator`. Its methods `estimate(X, ranges)` and
  `estimate_tiled(X, ranges, s)` return the estimate and an inlier mask. The
  tile size `s` must be a power of two.
- `TLSTranslationSolver(noise_bound, cbar2)`, with
  `solve_for_translation(src, dst)`.
- `GNCTLSRotationSolver` and `QuatroSolver`. Both are configured with
  `GNCRotationParams` and provide `solve_for_rotation(src, dst)`, which returns
  a 3x3 rotation and an inlier mask. The inlier weight threshold is 0.5 for
  `GNCTLSRotationSolver` and 0.4 for `QuatroSolver`.

## Nearest-neighbour search

`KDTreeIndex` is in `kiss_matcher.kdtree_index`. It builds a static k-d tree
over a sequence of points, such as a list of tuples or an (N, dim) array.

```python
from kiss_matcher.kdtree_index import KDTreeIndex

tree = KDTreeIndex(points, leaf_max_size=10)
tree.build_index()
for index, sq_dist in tree.knn_search(query, 5):
    print(index, sq_dist)
within = tree.radius_search(query, 0.25)   # squared radius for L2
```

Notes on `KDTreeIndex`:

- Call `build_index()` before you search, and again after the dataset changes.
- `knn_search` returns `(index, distance)` pairs, nearest first.
- `radius_search` returns the pairs whose distance is strictly below the
  radius. They are sorted by distance unless you pass `sorted=False`.
- `save_index(stream)` writes the tree structure to a binary stream, and
  `load_index(stream)` reads it back. The points themselves are not stored.

`kiss_matcher.dynamic_index` provides two more tree classes.

`DynamicKDTreeIndex`:

- Keeps its points in a caller-owned, growable sequence.
- `add_points(start, end)` inserts the points from index `start` to `end`
  inclusive.
- `remove_point(idx)` removes a point lazily. Removed points are no longer
  reported by searches.

`MatrixKDTree(dimensionality, matrix)`:

- Treats the rows of a matrix as the points. Pass `row_major=False` to use the
  columns instead.
- `query(query_point, num_closest)` returns the nearest pairs.

For custom queries, pass a result set from `kiss_matcher.result_sets` to
`find_neighbors`:

- `KNNResultSet` keeps the closest points found.
- `RadiusResultSet` collects every point within the radius.

Distance functions are in `kiss_matcher.metrics`:

- `L1Metric`
- `L2Metric`
- `L2SimpleMetric`
- `SO2Metric`
- `SO3Metric`

The L2 metrics and `SO3Metric` return squared distances. `L2SimpleMetric` is
the default for the trees, except `MatrixKDTree`, which uses `L2Metric`.

## What this package does not do

- It does not read or write point-cloud files.
- It does not extract features, and it does not find correspondences. You must
  supply matched point pairs.
- It has no command-line program. It is a library only.