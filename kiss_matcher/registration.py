"""Robust point-set registration from putative correspondences.

Rotation is solved first on translation-invariant measurements, then
translation with a per-axis truncated least squares estimator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import IntEnum

import numpy as np

from kiss_matcher.solvers import (
    GNCRotationParams,
    GNCRotationSolver,
    GNCTLSRotationSolver,
    QuatroSolver,
    TLSTranslationSolver,
)

__all__ = [
    "RotationEstimationAlgorithm",
    "RegistrationParams",
    "RegistrationSolution",
    "RobustRegistrationSolver",
]


class RotationEstimationAlgorithm(IntEnum):
    """Available GNC rotation estimators."""

    GNC_TLS = 0
    QUATRO = 1


@dataclass
class RegistrationParams:
    """Settings of :class:`RobustRegistrationSolver`.

    ``noise_bound`` bounds the noise of each measurement, ``cbar2`` is the
    square of the ratio between acceptable noise and noise bound, and the
    ``rotation_*`` fields configure the GNC rotation estimator.
    """

    noise_bound: float = 0.01
    cbar2: float = 1.0
    rotation_estimation_algorithm: RotationEstimationAlgorithm = (
        RotationEstimationAlgorithm.GNC_TLS
    )
    rotation_gnc_factor: float = 1.4
    rotation_max_iterations: int = 100
    rotation_cost_threshold: float = 1e-6


@dataclass
class RegistrationSolution:
    """Result of a registration: ``dst = rotation @ src + translation``."""

    valid: bool = False
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))


def _empty_mask() -> np.ndarray:
    return np.zeros(0, dtype=bool)


def _as_points(points) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.ndim != 2 or array.shape[0] != 3:
        raise ValueError("points must be given as a 3-by-N array")
    return array


class RobustRegistrationSolver:
    """Estimates rotation and translation between corresponding 3-D points."""

    def __init__(self, params: RegistrationParams | None = None) -> None:
        self.reset(params if params is not None else RegistrationParams())

    def reset(self, params: RegistrationParams) -> None:
        """Rebuild the estimators from ``params`` and forget earlier results."""
        self.params = params
        rotation_params = GNCRotationParams(
            max_iterations=params.rotation_max_iterations,
            cost_threshold=params.rotation_cost_threshold,
            gnc_factor=params.rotation_gnc_factor,
            noise_bound=params.noise_bound,
        )
        algorithm = RotationEstimationAlgorithm(params.rotation_estimation_algorithm)
        if algorithm is RotationEstimationAlgorithm.QUATRO:
            self.rotation_solver: GNCRotationSolver = QuatroSolver(rotation_params)
        else:
            self.rotation_solver = GNCTLSRotationSolver(rotation_params)
        self.translation_solver = TLSTranslationSolver(params.noise_bound, params.cbar2)

        self.solution = RegistrationSolution()
        self.indices: list[int] = []
        self.rotation_inliers: list[int] = []
        self.translation_inliers: list[int] = []
        self.scale_inliers_mask = _empty_mask()
        self.rotation_inliers_mask = _empty_mask()
        self.translation_inliers_mask = _empty_mask()
        self.src_tims = np.zeros((3, 0))
        self.dst_tims = np.zeros((3, 0))
        self.pruned_src_tims = np.zeros((3, 0))
        self.pruned_dst_tims = np.zeros((3, 0))
        self.src_tims_map = np.zeros((2, 0), dtype=int)
        self.dst_tims_map = np.zeros((2, 0), dtype=int)

    @property
    def gnc_rotation_cost_at_termination(self) -> float:
        """Cost of the rotation solver when it last stopped."""
        return self.rotation_solver.cost

    @property
    def rotation_inliers_map(self) -> np.ndarray:
        """Indices of the measurements used for rotation estimation."""
        return np.asarray(self.indices, dtype=int)

    @property
    def translation_inliers_map(self) -> np.ndarray:
        """Indices of the measurements used for translation estimation."""
        return np.asarray(self.indices, dtype=int)

    def compute_tims(self, v) -> tuple[np.ndarray, np.ndarray]:
        """Translation invariant measurements of a 3-by-N point array.

        Returns the 3-by-N(N-1)/2 differences ``v[:, j] - v[:, i]`` for every
        ``i < j`` and the 2-row map holding ``i`` and ``j`` for each column.
        """
        points = _as_points(v)
        n = points.shape[1]
        if n == 0:
            raise ValueError("at least one point is required")
        first, second = np.triu_indices(n, k=1)
        tims = points[:, second] - points[:, first]
        index_map = np.vstack([first, second]).astype(int)
        return tims, index_map

    def solve_for_rotation(self, v1, v2) -> np.ndarray:
        """Estimate ``R`` with ``v2 = R @ v1``; keeps the inlier mask."""
        rotation, mask = self.rotation_solver.solve_for_rotation(v1, v2)
        self.rotation_inliers_mask = mask
        self.solution.rotation = rotation
        return rotation

    def solve_for_translation(self, v1, v2) -> np.ndarray:
        """Estimate ``t`` with ``v2 = v1 + t``; keeps the inlier mask."""
        translation, mask = self.translation_solver.solve_for_translation(v1, v2)
        self.translation_inliers_mask = mask
        self.solution.translation = translation
        return translation

    def solve(self, src, dst) -> RegistrationSolution:
        """Register ``src`` onto ``dst``, both 3-by-N arrays of corresponding points.

        An invalid default solution is returned when fewer than two
        measurements survive rotation estimation.
        """
        src = _as_points(src)
        dst = _as_points(dst)
        if src.shape != dst.shape:
            raise ValueError("src and dst must have the same shape")
        num_corr = src.shape[1]
        if num_corr == 0:
            raise ValueError("at least one correspondence is required")

        self.indices = list(range(num_corr))
        self.rotation_inliers = []
        self.translation_inliers = []

        # Chain graph: each point paired with the next one, the last with the first.
        self.pruned_src_tims = np.roll(src, -1, axis=1) - src
        self.pruned_dst_tims = np.roll(dst, -1, axis=1) - dst

        self.rotation_solver.params = replace(
            self.rotation_solver.params, noise_bound=self.params.noise_bound * 2
        )
        self.solve_for_rotation(self.pruned_src_tims, self.pruned_dst_tims)

        self.rotation_inliers = np.flatnonzero(self.rotation_inliers_mask).tolist()
        if len(self.rotation_inliers) < 2:
            return RegistrationSolution()

        self.solve_for_translation(self.solution.rotation @ src, dst)
        self.translation_inliers = np.flatnonzero(self.translation_inliers_mask).tolist()
        self.solution.valid = bool(self.translation_inliers)
        return self.solution

    def scale_inliers(self) -> list[tuple[int, int]]:
        """Index pairs of the TIMs marked as scale inliers."""
        return [
            (int(self.src_tims_map[0, i]), int(self.src_tims_map[1, i]))
            for i in np.flatnonzero(self.scale_inliers_mask)
        ]

    def input_ordered_translation_inliers(self) -> list[int]:
        """Translation inliers expressed as indices of the input correspondences."""
        return [self.indices[i] for i in self.translation_inliers]