from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import numpy as np


__all__ = ["TrackAtVertex", "Vertex", "VertexingOptions"]


@dataclass(frozen=True, eq=False)
class TrackAtVertex:
    r"""
    One track as refitted at the vertex.

    Attributes
    ----------
    original_track : Any
        The caller's track object (not copied).
    momentum : ndarray, shape (3,)
        Fitted ``(phi, theta, qop)`` at the vertex.
    momentum_covariance : ndarray, shape (3, 3)
        :math:`\mathrm{cov}(\mathbf{p}_i)`.
    cross_covariance : ndarray, shape (4, 3)
        :math:`\mathrm{cov}(V, \mathbf{p}_i)`.
    parameters : ndarray, shape (6,)
        Refitted perigee parameters ``(0, 0, phi, theta, qop, t)`` relative to
        the vertex position.
    parameter_covariance : ndarray, shape (6, 6)
        Covariance of ``parameters``.
    chi2 : float
        Contribution of this track to the vertex chi-square.
    """
    original_track: Any
    momentum: np.ndarray
    momentum_covariance: np.ndarray
    cross_covariance: np.ndarray
    parameters: np.ndarray
    parameter_covariance: np.ndarray
    chi2: float


@dataclass(frozen=True, eq=False)
class Vertex:
    """Fitted (or seed) 4D vertex ``(x, y, z, t)`` with covariance and fit quality."""
    position: np.ndarray = field(default_factory=lambda: np.zeros(4))
    covariance: np.ndarray = field(default_factory=lambda: np.zeros((4, 4)))
    tracks: List[TrackAtVertex] = field(default_factory=list)
    chi2: float = 0.0
    ndf: float = 0.0

    @property
    def n_tracks(self) -> int:
        return len(self.tracks)

    def to_dict(self) -> dict:
        x, y, z, t = (float(v) for v in self.position)
        err = np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))
        return {
            "x": x, "y": y, "z": z, "t": t,
            "sigma_x": float(err[0]), "sigma_y": float(err[1]),
            "sigma_z": float(err[2]), "sigma_t": float(err[3]),
            "chi2": float(self.chi2), "ndf": float(self.ndf),
            "n_tracks": self.n_tracks,
        }


class VertexingOptions:
    r"""
    Per-call options of the vertex fitter.

    Parameters
    ----------
    constraint_position : array_like, shape (3,) or (4,), optional
        Prior vertex position. A missing time is ``0``.
    constraint_covariance : array_like, shape (3, 3) or (4, 4), optional
        Prior covariance. A 3x3 block gets a very loose time variance. The
        constraint is active only when this matrix is invertible.
    seed_position : array_like, shape (3,) or (4,), optional
        Starting point of an unconstrained fit (default origin).

    Attributes
    ----------
    use_constraint : bool
        ``True`` when a non-singular constraint covariance was supplied.
    """

    __slots__ = ("constraint_position", "constraint_covariance", "seed_position", "use_constraint")

    def __init__(self,
                 constraint_position: Optional[Sequence[float]] = None,
                 constraint_covariance: Optional[np.ndarray] = None,
                 seed_position: Optional[Sequence[float]] = None) -> None:
        self.constraint_position = _as_4vector(constraint_position)
        self.constraint_covariance = _as_4x4(constraint_covariance)
        self.seed_position = _as_4vector(seed_position)
        self.use_constraint = bool(
            constraint_covariance is not None
            and np.all(np.isfinite(self.constraint_covariance))
            and abs(np.linalg.det(self.constraint_covariance)) > 0.0
        )

    def starting_point(self) -> np.ndarray:
        """Constraint position for a constrained fit, else the seed."""
        return (self.constraint_position if self.use_constraint else self.seed_position).copy()


def _as_4vector(v: Optional[Sequence[float]]) -> np.ndarray:
    out = np.zeros(4, dtype=np.float64)
    if v is not None:
        arr = np.asarray(v, dtype=np.float64).ravel()
        if arr.size > 4:
            raise ValueError(f"expected a 3D or 4D position, got {arr.size} components")
        out[:arr.size] = arr
    return out


def _as_4x4(M: Optional[np.ndarray]) -> np.ndarray:
    out = np.zeros((4, 4), dtype=np.float64)
    if M is None:
        return out
    arr = np.asarray(M, dtype=np.float64)
    n = arr.shape[0]
    out[:n, :n] = arr
    if n == 3:
        # no timing information in the prior
        out[3, 3] = 1.0e12
    return out
