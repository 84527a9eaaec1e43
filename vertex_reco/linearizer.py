from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from vertex_reco.errors import LinearizationError, NoCovarianceError, SingularMatrixError
from vertex_reco.field import ConstantMagneticField, MagneticFieldCache
from vertex_reco.linalg import spd_inverse, symmetrize
from vertex_reco.track_parameters import (
    PHI,
    PION_MASS,
    BoundTrackParameters,
    perigee_to_state,
    state_to_perigee,
    wrap_phi,
)


__all__ = [
    "LinearizedTrack",
    "LinearizerState",
    "TrackLinearizer",
    "NumericalTrackLinearizer",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class LinearizedTrack:
    r"""
    Local linear model of a track around a vertex hypothesis :math:`V_0`.

    With the track re-expressed at the perigee of :math:`V_0`,

    .. math::

        \mathbf{q}(V, \mathbf{p}) \approx \mathbf{q}_0
            + \mathbf{D}\,(V - V_0) + \mathbf{E}\,(\mathbf{p} - \mathbf{p}_0),

    where :math:`\mathbf{D}=\partial\mathbf{q}/\partial V\in\mathbb{R}^{6\times4}`
    and :math:`\mathbf{E}=\partial\mathbf{q}/\partial\mathbf{p}\in\mathbb{R}^{6\times3}`
    with :math:`\mathbf{p}=(\phi,\theta,q/p)`.

    Attributes
    ----------
    parameters_at_pca : ndarray, shape (6,)
        Measured parameters relative to the linearization point.
    covariance_at_pca : ndarray, shape (6, 6)
        Their covariance.
    weight_at_pca : ndarray, shape (6, 6)
        Inverse of ``covariance_at_pca``.
    position_jacobian : ndarray, shape (6, 4)
        :math:`\mathbf{D}`.
    momentum_jacobian : ndarray, shape (6, 3)
        :math:`\mathbf{E}`.
    position_at_pca : ndarray, shape (4,)
        Global ``(x, y, z, t)`` of the PCA to the linearization point.
    momentum_at_pca : ndarray, shape (3,)
        ``(phi, theta, qop)`` at the PCA.
    constant_term : ndarray, shape (6,)
        :math:`\mathbf{q}_0 - \mathbf{D}V_0 - \mathbf{E}\mathbf{p}_0`.
    linearization_point : ndarray, shape (4,)
        :math:`V_0`.
    """
    parameters_at_pca: np.ndarray
    covariance_at_pca: np.ndarray
    weight_at_pca: np.ndarray
    position_jacobian: np.ndarray
    momentum_jacobian: np.ndarray
    position_at_pca: np.ndarray
    momentum_at_pca: np.ndarray
    constant_term: np.ndarray
    linearization_point: np.ndarray


@dataclass(slots=True)
class LinearizerState:
    """Call-scoped linearizer resources (the field lookup cache)."""
    field_cache: MagneticFieldCache


class TrackLinearizer(abc.ABC):
    r"""
    Interface of a track linearizer consumed by the vertex fitter.

    Implementations must be deterministic for fixed inputs and raise
    :class:`~vertex_reco.errors.LinearizationError` when no linear model can be
    built (the fitter propagates it unchanged).
    """

    @abc.abstractmethod
    def make_state(self) -> LinearizerState:
        """Create the per-fit state (field cache) of this linearizer."""

    @abc.abstractmethod
    def linearize_track(self,
                        params: BoundTrackParameters,
                        linearization_point: Sequence[float],
                        state: LinearizerState) -> LinearizedTrack:
        """Linearize ``params`` around the 4D ``linearization_point``."""


def _central_jacobian(f: Callable[[np.ndarray], np.ndarray],
                      x0: np.ndarray,
                      steps: np.ndarray) -> np.ndarray:
    r"""
    Central finite-difference Jacobian of a perigee-valued function.

    The :math:`\phi` component of each difference is wrapped into
    :math:`(-\pi,\pi]` so that columns stay continuous across the branch cut.
    """
    x0 = np.asarray(x0, dtype=np.float64)
    cols = []
    for i, h in enumerate(steps):
        xp = x0.copy()
        xm = x0.copy()
        xp[i] += h
        xm[i] -= h
        diff = f(xp) - f(xm)
        diff[PHI] = wrap_phi(diff[PHI])
        cols.append(diff / (2.0 * h))
    return np.column_stack(cols)


class NumericalTrackLinearizer(TrackLinearizer):
    r"""
    Helix linearizer with finite-difference Jacobians.

    The measured perigee parameters are first moved to a perigee around the
    linearization point :math:`V_0` (helix transport in a constant field, see
    :func:`vertex_reco.track_parameters.state_to_perigee`), together with their
    covariance :math:`\mathbf{C}' = \mathbf{J}\mathbf{C}\mathbf{J}^\top`. The
    model :math:`f(V, \mathbf{p})` (perigee around :math:`V_0` of the helix
    passing through :math:`V` with momentum :math:`\mathbf{p}`) is then
    differentiated by central differences to give :math:`\mathbf{D}` and
    :math:`\mathbf{E}`.

    Parameters
    ----------
    field : ConstantMagneticField
        Field provider; queried at the linearization point through the
        call-scoped cache.
    mass : float, optional
        Mass hypothesis (GeV). Default pion mass.
    position_step : float, optional
        Difference step for ``x, y, z`` (mm) and ``t`` (ns). Default ``1e-4``.
    angle_step : float, optional
        Difference step for ``phi, theta`` (rad). Default ``1e-6``.
    qop_step : float, optional
        Relative difference step for ``q/p``. Default ``1e-6``.
    """

    __slots__ = ("field", "mass", "position_step", "angle_step", "qop_step")

    def __init__(self,
                 field: ConstantMagneticField,
                 mass: float = PION_MASS,
                 position_step: float = 1e-4,
                 angle_step: float = 1e-6,
                 qop_step: float = 1e-6) -> None:
        self.field = field
        self.mass = float(mass)
        self.position_step = float(position_step)
        self.angle_step = float(angle_step)
        self.qop_step = float(qop_step)

    def make_state(self) -> LinearizerState:
        return LinearizerState(field_cache=self.field.make_cache())

    def _qop_h(self, qop: float) -> float:
        return self.qop_step * max(abs(qop), 1e-3)

    def linearize_track(self,
                        params: BoundTrackParameters,
                        linearization_point: Sequence[float],
                        state: LinearizerState) -> LinearizedTrack:
        r"""
        Build the :class:`LinearizedTrack` of ``params`` at ``linearization_point``.

        Raises
        ------
        NoCovarianceError
            If the track has no covariance.
        LinearizationError
            If the transported covariance is singular or the model is not
            finite at the requested point.
        """
        if not params.has_covariance:
            raise NoCovarianceError("track parameters without covariance cannot be linearized")

        lin = np.asarray(linearization_point, dtype=np.float64).ravel()
        if lin.size != 4 or not np.all(np.isfinite(lin)):
            raise LinearizationError(f"invalid linearization point {lin}")
        ref = lin[:3]
        bz = float(self.field.field_at(ref, state.field_cache)[2])
        mass = self.mass

        def to_pca(q: np.ndarray) -> np.ndarray:
            pos, mom = perigee_to_state(q, params.reference)
            return state_to_perigee(pos, mom, ref, bz, mass)

        q_in = np.array(params.parameters, dtype=np.float64)
        q_pca = to_pca(q_in)
        h = self.position_step
        a = self.angle_step
        J = _central_jacobian(to_pca, q_in, np.array([h, h, a, a, self._qop_h(q_in[4]), h]))
        cov = symmetrize(J @ params.covariance @ J.T)
        try:
            weight = spd_inverse(cov, what="transported track covariance")
        except SingularMatrixError as e:
            raise LinearizationError(str(e)) from e

        mom = q_pca[2:5].copy()
        D = _central_jacobian(lambda v: state_to_perigee(v, mom, ref, bz, mass),
                              lin, np.array([h, h, h, h]))
        E = _central_jacobian(lambda p: state_to_perigee(lin, p, ref, bz, mass),
                              mom, np.array([a, a, self._qop_h(mom[2])]))

        pos_at_pca, _ = perigee_to_state(q_pca, ref)
        constant = q_pca - D @ lin - E @ mom

        if not (np.all(np.isfinite(q_pca)) and np.all(np.isfinite(D)) and np.all(np.isfinite(E))):
            raise LinearizationError(f"non-finite linearization at {lin}")

        logger.debug("Linearized track at %s: params_at_pca=%s", lin, q_pca)
        return LinearizedTrack(
            parameters_at_pca=q_pca,
            covariance_at_pca=cov,
            weight_at_pca=weight,
            position_jacobian=D,
            momentum_jacobian=E,
            position_at_pca=pos_at_pca,
            momentum_at_pca=mom,
            constant_term=constant,
            linearization_point=lin.copy(),
        )
