from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence, Tuple

import numpy as np


__all__ = [
    "B_TO_CURVATURE",
    "C_LIGHT",
    "PION_MASS",
    "UNMEASURED_TIME_VARIANCE",
    "PARAMETER_NAMES",
    "BoundTrackParameters",
    "ParameterExtractor",
    "identity_extractor",
    "normalize_phi_theta",
    "wrap_phi",
    "perigee_to_state",
    "state_to_perigee",
]

# pT [GeV] = B_TO_CURVATURE * B [T] * R [mm]
B_TO_CURVATURE = 0.299792458e-3
# mm / ns
C_LIGHT = 299.792458
# GeV
PION_MASS = 0.13957039
# ns^2, assigned to tracks read without a time measurement
UNMEASURED_TIME_VARIANCE = 1.0e6

PARAMETER_NAMES: Tuple[str, ...] = ("d0", "z0", "phi", "theta", "qop", "t")
D0, Z0, PHI, THETA, QOP, TIME = range(6)


@dataclass(frozen=True, eq=False)
class BoundTrackParameters:
    r"""
    Perigee parameters of a charged track with an optional covariance.

    The parameter vector is

    .. math::

        \mathbf{q} = (d_0,\; z_0,\; \phi,\; \theta,\; q/p,\; t)^\top,

    expressed relative to ``reference`` (a point on the beam axis by default).
    The point of closest approach (PCA) in the transverse plane is

    .. math::

        \mathbf{x}_\text{PCA} = \mathbf{r} + (-d_0\sin\phi,\; d_0\cos\phi,\; z_0).

    Parameters
    ----------
    parameters : array_like, shape (5,) or (6,)
        ``(d0, z0, phi, theta, qop[, t])`` in mm, rad, 1/GeV and ns. A missing
        time is set to ``0`` and its variance to
        :data:`UNMEASURED_TIME_VARIANCE`.
    covariance : array_like, shape (5, 5) or (6, 6), optional
        Parameter covariance. ``None`` means the track carries no covariance;
        density seeding and fitting then fail with
        :class:`~vertex_reco.errors.NoCovarianceError`.
    reference : array_like, shape (3,), optional
        Perigee reference point (default origin).
    """
    parameters: np.ndarray
    covariance: Optional[np.ndarray] = None
    reference: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        p = np.asarray(self.parameters, dtype=np.float64).ravel()
        if p.size not in (5, 6):
            raise ValueError(f"expected 5 or 6 track parameters, got {p.size}")
        has_time = p.size == 6
        if not has_time:
            p = np.append(p, 0.0)
        p.setflags(write=False)
        object.__setattr__(self, "parameters", p)

        if self.covariance is not None:
            C = np.asarray(self.covariance, dtype=np.float64)
            if C.shape == (5, 5) and not has_time:
                full = np.zeros((6, 6), dtype=np.float64)
                full[:5, :5] = C
                full[TIME, TIME] = UNMEASURED_TIME_VARIANCE
                C = full
            elif C.shape != (6, 6):
                raise ValueError(f"covariance shape {C.shape} does not match {p.size} parameters")
            C = C.copy()
            C.setflags(write=False)
            object.__setattr__(self, "covariance", C)

        ref = np.asarray(self.reference, dtype=np.float64).ravel()[:3].copy()
        ref.setflags(write=False)
        object.__setattr__(self, "reference", ref)

    @property
    def d0(self) -> float:
        return float(self.parameters[D0])

    @property
    def z0(self) -> float:
        return float(self.parameters[Z0])

    @property
    def phi(self) -> float:
        return float(self.parameters[PHI])

    @property
    def theta(self) -> float:
        return float(self.parameters[THETA])

    @property
    def qop(self) -> float:
        return float(self.parameters[QOP])

    @property
    def time(self) -> float:
        return float(self.parameters[TIME])

    @property
    def has_covariance(self) -> bool:
        return self.covariance is not None

    @property
    def momentum(self) -> np.ndarray:
        """Momentum triple ``(phi, theta, qop)``."""
        return self.parameters[PHI:TIME].copy()

    @property
    def charge(self) -> float:
        return float(np.sign(self.qop)) if self.qop != 0.0 else 0.0

    def position(self) -> np.ndarray:
        """4D position ``(x, y, z, t)`` of the perigee PCA."""
        pos, _ = perigee_to_state(self.parameters, self.reference)
        return pos


ParameterExtractor = Callable[[Any], BoundTrackParameters]


def identity_extractor(track: Any) -> BoundTrackParameters:
    """Extractor for inputs that already are :class:`BoundTrackParameters`."""
    return track


def wrap_phi(phi: float) -> float:
    r"""Wrap an angle into :math:`(-\pi, \pi]`."""
    out = float(np.remainder(phi + np.pi, 2.0 * np.pi) - np.pi)
    return np.pi if out == -np.pi else out


def normalize_phi_theta(phi: float, theta: float) -> Tuple[float, float]:
    r"""
    Bring :math:`(\phi, \theta)` back into :math:`(-\pi,\pi]\times[0,\pi]`.

    A polar angle beyond :math:`\pi` is reflected, which flips the azimuth by
    :math:`\pi`.
    """
    theta = float(np.remainder(theta, 2.0 * np.pi))
    if theta > np.pi:
        theta = 2.0 * np.pi - theta
        phi = phi + np.pi
    return wrap_phi(phi), theta


def _beta(qop: float, mass: float) -> float:
    if qop == 0.0:
        return 1.0
    p = 1.0 / abs(qop)
    return p / np.sqrt(p * p + mass * mass)


def perigee_to_state(parameters: Sequence[float],
                     reference: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    r"""
    Convert perigee parameters into a 4D PCA position and a momentum triple.

    Parameters
    ----------
    parameters : array_like, shape (6,)
        ``(d0, z0, phi, theta, qop, t)``.
    reference : array_like, shape (3,)
        Perigee reference point.

    Returns
    -------
    position : ndarray, shape (4,)
        ``(x, y, z, t)`` of the PCA.
    momentum : ndarray, shape (3,)
        ``(phi, theta, qop)`` at the PCA.
    """
    d0, z0, phi, theta, qop, t = (float(v) for v in parameters[:6])
    rx, ry, rz = (float(v) for v in reference[:3])
    position = np.array([rx - d0 * np.sin(phi), ry + d0 * np.cos(phi), rz + z0, t])
    return position, np.array([phi, theta, qop])


def state_to_perigee(position: Sequence[float],
                     momentum: Sequence[float],
                     reference: Sequence[float],
                     bz: float,
                     mass: float = PION_MASS) -> np.ndarray:
    r"""
    Perigee parameters, relative to ``reference``, of the helix through ``position``.

    In a field :math:`B_z` a track of signed radius

    .. math::

        \rho = \frac{\sin\theta}{k\,B_z\,(q/p)},\qquad
        k = 0.299792458\times10^{-3}\ \mathrm{GeV\,T^{-1}\,mm^{-1}},

    turns with :math:`d\phi/ds_T = -1/\rho` around the centre
    :math:`(x_0 + \rho\sin\phi_0,\; y_0 - \rho\cos\phi_0)`. The transverse PCA to
    the reference is the point of the circle nearest to it; :math:`z` and
    :math:`t` are carried along the arc length :math:`s_T`:

    .. math::

        z = z_0 + s_T\cot\theta,\qquad
        t = t_0 + \frac{s_T}{\sin\theta\,\beta c}.

    With :math:`B_z = 0` or :math:`q/p = 0` the track is a straight line.

    Parameters
    ----------
    position : array_like, shape (4,)
        A point ``(x, y, z, t)`` on the track.
    momentum : array_like, shape (3,)
        ``(phi, theta, qop)`` at ``position``.
    reference : array_like, shape (3,)
        New perigee reference.
    bz : float
        Field strength (T).
    mass : float, optional
        Mass hypothesis (GeV) for the velocity :math:`\beta = p/E`.

    Returns
    -------
    ndarray, shape (6,)
        ``(d0, z0, phi, theta, qop, t)`` relative to ``reference``.
    """
    x0, y0, z0, t0 = (float(v) for v in position[:4])
    phi0, theta, qop = (float(v) for v in momentum[:3])
    rx, ry, rz = (float(v) for v in reference[:3])
    sin_t = np.sin(theta)
    cot_t = np.cos(theta) / sin_t

    if bz == 0.0 or qop == 0.0:
        c, s = np.cos(phi0), np.sin(phi0)
        s_t = (rx - x0) * c + (ry - y0) * s
        phi = phi0
        px = x0 + s_t * c
        py = y0 + s_t * s
    else:
        rho = sin_t / (B_TO_CURVATURE * bz * qop)
        xc = x0 + rho * np.sin(phi0)
        yc = y0 - rho * np.cos(phi0)
        sgn = 1.0 if rho > 0.0 else -1.0
        phi = float(np.arctan2(-sgn * (rx - xc), sgn * (ry - yc)))
        s_t = -rho * wrap_phi(phi - phi0)
        px = xc - rho * np.sin(phi)
        py = yc + rho * np.cos(phi)

    pz = z0 + s_t * cot_t
    t = t0 + (s_t / sin_t) / (_beta(qop, mass) * C_LIGHT)
    d0 = -(px - rx) * np.sin(phi) + (py - ry) * np.cos(phi)
    return np.array([d0, pz - rz, phi, theta, qop, t])
