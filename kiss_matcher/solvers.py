"""Robust scalar, translation and rotation estimators based on truncated least squares."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from operator import itemgetter

import numpy as np

__all__ = [
    "ScalarTLSEstimator",
    "TLSTranslationSolver",
    "GNCRotationParams",
    "GNCRotationSolver",
    "GNCTLSRotationSolver",
    "QuatroSolver",
]


def _safe_div(num: float, den: float) -> float:
    if den == 0:
        return math.nan
    return num / den


def _check_measurements(X, ranges) -> tuple[np.ndarray, np.ndarray]:
    x = np.asarray(X, dtype=float)
    r = np.asarray(ranges, dtype=float)
    if x.shape != r.shape or x.ndim != 1:
        raise ValueError("measurements and ranges must be 1-D arrays of the same length")
    if x.size < 2:
        raise ValueError("at least two measurements are required")
    return x, r


def _check_pair(src, dst) -> tuple[np.ndarray, np.ndarray]:
    a = np.asarray(src, dtype=float)
    b = np.asarray(dst, dtype=float)
    if a.ndim != 2 or a.shape[0] != 3:
        raise ValueError("points must be given as a 3-by-N array")
    if a.shape != b.shape:
        raise ValueError("src and dst must have the same shape")
    return a, b


def _select_min(x_hat: np.ndarray, x_cost: np.ndarray) -> float:
    return float(x_hat[int(np.nanargmin(x_cost))])


@dataclass
class _CenterSums:
    outside_range_sum: float = 0.0
    dot_x_weights: float = 0.0
    dot_weights: float = 0.0
    members: list[float] = field(default_factory=list)


class ScalarTLSEstimator:
    """Truncated least squares estimate of a scalar from bounded measurements."""

    def estimate(self, X, ranges) -> tuple[float, np.ndarray]:
        """Return the TLS estimate and the mask of measurements within their range of it."""
        x, r = _check_measurements(X, ranges)
        xs = x.tolist()
        rs = r.tolist()
        weights = [1.0 / (ri * ri) for ri in rs]

        events = []
        for idx, (xi, ri) in enumerate(zip(xs, rs)):
            events.append((xi - ri, idx, 1))
            events.append((xi + ri, idx, -1))
        events.sort(key=itemgetter(0))

        outside_sum = float(sum(rs))
        dot_x_weights = 0.0
        dot_weights = 0.0
        cardinality = 0
        sum_xi = 0.0
        sum_xi_sq = 0.0
        x_hat = []
        x_cost = []
        for _, idx, sign in events:
            xi = xs[idx]
            cardinality += sign
            dot_weights += sign * weights[idx]
            dot_x_weights += sign * weights[idx] * xi
            outside_sum -= sign * rs[idx]
            sum_xi += sign * xi
            sum_xi_sq += sign * xi * xi

            center = _safe_div(dot_x_weights, dot_weights)
            residual = cardinality * center * center + sum_xi_sq - 2 * sum_xi * center
            x_hat.append(center)
            x_cost.append(residual + outside_sum)

        estimate = _select_min(np.array(x_hat), np.array(x_cost))
        return estimate, np.abs(x - estimate) <= r

    def estimate_tiled(self, X, ranges, s) -> tuple[float, np.ndarray]:
        """TLS estimate evaluated at interval centres with loop tiling of size ``s``.

        ``s`` must be a positive power of two.
        """
        if s < 1 or s & (s - 1):
            raise ValueError("tile size must be a positive power of two")
        x, r = _check_measurements(X, ranges)
        n = x.size
        h = np.sort(np.concatenate([x - r, x + r]))
        centers = (h[:-1] + h[1:]) / 2
        nr_centers = centers.size
        weights = 1.0 / (r * r)

        ih_bound = nr_centers & ~(s - 1)
        jh_bound = n & ~(s - 1)

        sums = [_CenterSums() for _ in range(nr_centers)]
        x_hat = np.zeros(nr_centers)
        x_cost = np.zeros(nr_centers)

        def accumulate(i: int, jh: int, lower: int, upper: int) -> None:
            acc = sums[i]
            center = centers[i]
            last = 0
            for j in range(jh + lower, jh + upper):
                last = j
                if abs(x[j] - center) <= r[j]:
                    acc.dot_x_weights += x[j] * weights[j]
                    acc.dot_weights += weights[j]
                    acc.members.append(float(x[j]))
                else:
                    acc.outside_range_sum += r[j]
            if last == n - 1:
                x_hat[i] = _safe_div(acc.dot_x_weights, acc.dot_weights)
                residual = np.asarray(acc.members) - x_hat[i]
                x_cost[i] = float(np.sum(residual * residual)) + acc.outside_range_sum

        for ih in range(0, ih_bound, s):
            for jh in range(0, jh_bound, s):
                for i in range(ih, ih + s):
                    accumulate(i, jh, 0, s)
        for i in range(nr_centers):
            accumulate(i, 0, jh_bound, n)
        for i in range(ih_bound, nr_centers):
            accumulate(i, 0, 0, n)

        estimate = _select_min(x_hat, x_cost)
        return estimate, np.abs(x - estimate) <= r


class TLSTranslationSolver:
    """Translation estimation with a per-axis truncated least squares estimator."""

    def __init__(self, noise_bound: float, cbar2: float) -> None:
        self.noise_bound = noise_bound
        self.cbar2 = cbar2
        self._estimator = ScalarTLSEstimator()

    def solve_for_translation(self, src, dst) -> tuple[np.ndarray, np.ndarray]:
        """Estimate ``t`` with ``dst = src + t``; a point is an inlier on all three axes."""
        src, dst = _check_pair(src, dst)
        raw = dst - src
        n = raw.shape[1]
        alphas = np.full(n, self.noise_bound * math.sqrt(self.cbar2))
        translation = np.zeros(3)
        inliers = np.ones(n, dtype=bool)
        for axis, row in enumerate(raw):
            translation[axis], row_inliers = self._estimator.estimate(row, alphas)
            inliers &= row_inliers
        return translation, inliers


@dataclass
class GNCRotationParams:
    """Settings of a graduated non-convexity rotation solver."""

    max_iterations: int = 100
    cost_threshold: float = 1e-6
    gnc_factor: float = 1.4
    noise_bound: float = 0.01


class GNCRotationSolver(ABC):
    """Base of the GNC-TLS rotation solvers.

    ``cost`` holds the cost at termination of the last run (infinite before
    any run and when the first iteration finds no significant residual).
    """

    inlier_threshold = 0.5

    def __init__(self, params: GNCRotationParams) -> None:
        self.params = params
        self.cost = math.inf

    @abstractmethod
    def _fit(self, src: np.ndarray, dst: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """Weighted least-squares rotation mapping ``src`` onto ``dst``."""

    def _working_coordinates(self, points: np.ndarray) -> np.ndarray:
        return points

    def _to_rotation(self, rotation: np.ndarray) -> np.ndarray:
        return rotation

    def solve_for_rotation(self, src, dst) -> tuple[np.ndarray, np.ndarray]:
        """Estimate ``R`` with ``dst = R @ src``; return it with the inlier mask."""
        src, dst = _check_pair(src, dst)
        params = self.params
        if params.gnc_factor <= 1:
            raise ValueError("gnc_factor must be greater than 1")
        if params.noise_bound == 0:
            raise ValueError("noise_bound must not be zero")
        a = self._working_coordinates(src)
        b = self._working_coordinates(dst)
        rotation, weights = self._graduated_non_convexity(a, b)
        return self._to_rotation(rotation), weights >= self.inlier_threshold

    def _graduated_non_convexity(
        self, src: np.ndarray, dst: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        params = self.params
        noise_bound_sq = params.noise_bound**2
        if noise_bound_sq < 1e-16:
            noise_bound_sq = 1e-2

        mu = 1.0
        prev_cost = math.inf
        self.cost = math.inf
        weights = np.ones(src.shape[1])
        rotation = np.eye(src.shape[0])

        for iteration in range(params.max_iterations):
            rotation = self._fit(src, dst, weights)
            residuals_sq = np.sum((dst - rotation @ src) ** 2, axis=0)
            if iteration == 0:
                denominator = 2 * float(residuals_sq.max()) / noise_bound_sq - 1
                mu = math.inf if denominator == 0 else 1 / denominator
                if mu <= 0:
                    break

            th1 = (mu + 1) / mu * noise_bound_sq
            th2 = mu / (mu + 1) * noise_bound_sq
            self.cost = float(np.sum(weights * residuals_sq))

            with np.errstate(divide="ignore", invalid="ignore"):
                middle = np.sqrt(noise_bound_sq * mu * (mu + 1) / residuals_sq) - mu
            weights = np.where(
                residuals_sq >= th1, 0.0, np.where(residuals_sq <= th2, 1.0, middle)
            )

            cost_diff = abs(self.cost - prev_cost)
            mu *= params.gnc_factor
            prev_cost = self.cost
            if cost_diff < params.cost_threshold:
                break

        return rotation, weights


class GNCTLSRotationSolver(GNCRotationSolver):
    """Full 3-D rotation estimation with GNC-TLS; inliers have weight at least 0.5."""

    inlier_threshold = 0.5

    def svd_rot(self, X, Y, W) -> np.ndarray:
        """Rotation minimising the weighted distance between ``R @ X`` and ``Y``."""
        X = np.asarray(X, dtype=float)
        Y = np.asarray(Y, dtype=float)
        H = (X * np.asarray(W, dtype=float)) @ Y.T
        U, _, Vt = np.linalg.svd(H)
        V = Vt.T
        if np.linalg.det(U) * np.linalg.det(V) < 0:
            V[:, 2] *= -1
        return V @ U.T

    def _fit(self, src, dst, weights):
        return self.svd_rot(src, dst, weights)

    def solve_for_rotation(self, src, dst) -> tuple[np.ndarray, np.ndarray]:
        """Estimate the 3-D rotation ``R`` with ``dst = R @ src`` and its inliers."""
        return super().solve_for_rotation(src, dst)


class QuatroSolver(GNCRotationSolver):
    """Yaw-only rotation estimation; roll and pitch are left as identity.

    Inliers are the correspondences whose final weight is at least 0.4.
    """

    inlier_threshold = 0.4

    def svd_rot_2d(self, X, Y, W) -> np.ndarray:
        """Planar rotation minimising the weighted distance between ``R @ X`` and ``Y``."""
        X = np.asarray(X, dtype=float)
        Y = np.asarray(Y, dtype=float)
        H = (X * np.asarray(W, dtype=float)) @ Y.T
        U, _, Vt = np.linalg.svd(H)
        V = Vt.T
        if np.linalg.det(U) * np.linalg.det(V) < 0:
            V[:, 1] *= -1
        return V @ U.T

    def _fit(self, src, dst, weights):
        return self.svd_rot_2d(src, dst, weights)

    def _working_coordinates(self, points):
        return points[:2]

    def _to_rotation(self, rotation):
        full = np.eye(3)
        full[:2, :2] = rotation
        return full

    def solve_for_rotation(self, src, dst) -> tuple[np.ndarray, np.ndarray]:
        """Estimate the yaw rotation from the x-y coordinates; return a 3x3 matrix."""
        return super().solve_for_rotation(src, dst)