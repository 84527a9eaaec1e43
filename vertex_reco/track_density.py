from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from vertex_reco.errors import NoCovarianceError
from vertex_reco.track_parameters import D0, Z0, ParameterExtractor, identity_extractor


__all__ = ["TrackDensityEntry", "DensityState", "GaussianTrackDensity"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TrackDensityEntry:
    r"""
    Quadratic log-density of one track along the beam axis.

    Inside ``(lower_bound, upper_bound)`` the track contributes

    .. math::

        \rho_i(z) = \exp\bigl(c_0 + c_1 z + c_2 z^2\bigr),

    and nothing outside.
    """
    z: float
    c0: float
    c1: float
    c2: float
    lower_bound: float
    upper_bound: float


@dataclass(slots=True)
class DensityState:
    """Entries accumulated by one seeding call; not shared between calls."""
    track_entries: List[TrackDensityEntry] = field(default_factory=list)

    def as_arrays(self) -> Tuple[np.ndarray, ...]:
        """Column arrays ``(c0, c1, c2, lower, upper)`` for the density kernel."""
        n = len(self.track_entries)
        out = np.empty((5, n), dtype=np.float64)
        for j, e in enumerate(self.track_entries):
            out[0, j] = e.c0
            out[1, j] = e.c1
            out[2, j] = e.c2
            out[3, j] = e.lower_bound
            out[4, j] = e.upper_bound
        return out[0], out[1], out[2], out[3], out[4]


@njit(cache=True)
def _density_and_derivatives(z: float,
                             c0: np.ndarray,
                             c1: np.ndarray,
                             c2: np.ndarray,
                             lower: np.ndarray,
                             upper: np.ndarray) -> Tuple[float, float, float]:
    r"""
    Summed density and its first two derivatives at ``z``.

    For every entry with :math:`z_\text{lo} < z < z_\text{hi}`:

    .. math::

        \delta = e^{c_0 + z(c_1 + z c_2)},\quad
        q' = c_1 + 2 c_2 z,\quad
        \rho \mathrel{+}= \delta,\quad
        \rho' \mathrel{+}= \delta q',\quad
        \rho'' \mathrel{+}= 2 c_2\delta + q'^2\delta.
    """
    density = 0.0
    first = 0.0
    second = 0.0
    for j in range(c0.shape[0]):
        if lower[j] < z and z < upper[j]:
            delta = np.exp(c0[j] + z * (c1[j] + z * c2[j]))
            q_prime = c1[j] + 2.0 * z * c2[j]
            delta_prime = delta * q_prime
            density += delta
            first += delta_prime
            second += 2.0 * c2[j] * delta + q_prime * delta_prime
    return density, first, second


class GaussianTrackDensity:
    r"""
    Gaussian track-density model of the longitudinal vertex position.

    Each track with impact parameters :math:`(d_0, z_0)` and 2x2 covariance

    .. math::

        \Sigma = \begin{pmatrix} \sigma_{dd} & \sigma_{dz} \\
                                 \sigma_{dz} & \sigma_{zz} \end{pmatrix},
        \qquad \Delta = \det\Sigma,

    is modelled as the bivariate Gaussian in :math:`(d_0, z_0)` evaluated on the
    beam axis (:math:`d = 0`) as a function of :math:`z`. Its logarithm is the
    quadratic :math:`c_0 + c_1 z + c_2 z^2` with

    .. math::

        c_0 = -\frac{d_0^2\sigma_{zz} + z_0^2\sigma_{dd} + 2 d_0 z_0\sigma_{dz}}{2\Delta}
              - \log\bigl(2\pi\sqrt{\Delta}\bigr),\quad
        c_1 = \frac{d_0\sigma_{dz} + z_0\sigma_{dd}}{\Delta},\quad
        c_2 = -\frac{\sigma_{dd}}{2\Delta}.

    The track is only counted between the roots of
    :math:`c_0 + c_1 z + c_2 z^2 + 2\,\text{z0\_significance\_cut} = 0`
    (before normalization).

    Parameters
    ----------
    d0_significance_cut : float, optional
        Maximum :math:`d_0^2/\sigma_{dd}` of a contributing track. Default
        ``12.25`` (3.5 sigma).
    z0_significance_cut : float, optional
        Longitudinal significance bounding the valid z range. Default ``144``
        (12 sigma).
    is_gaussian_shaped : bool, optional
        Use the Gaussian step :math:`y y'/(y'^2 - y y'')` in the maximum search
        instead of the Newton step :math:`-y'/y''`. Default ``True``.
    extract_parameters : callable, optional
        ``track -> BoundTrackParameters``; identity by default.
    """

    __slots__ = ("d0_significance_cut", "z0_significance_cut", "is_gaussian_shaped",
                 "extract_parameters")

    def __init__(self,
                 d0_significance_cut: float = 3.5 ** 2,
                 z0_significance_cut: float = 12.0 ** 2,
                 is_gaussian_shaped: bool = True,
                 extract_parameters: ParameterExtractor = identity_extractor) -> None:
        self.d0_significance_cut = float(d0_significance_cut)
        self.z0_significance_cut = float(z0_significance_cut)
        self.is_gaussian_shaped = bool(is_gaussian_shaped)
        self.extract_parameters = extract_parameters

    def add_tracks(self, tracks: Sequence[Any], state: DensityState) -> None:
        r"""
        Convert ``tracks`` into :class:`TrackDensityEntry` objects in ``state``.

        Tracks failing the covariance or :math:`d_0` significance selection, or
        whose quadratic has no real roots, are skipped silently.

        Raises
        ------
        NoCovarianceError
            If any track lacks a covariance. No entry is added in that case.
        """
        params = [self.extract_parameters(trk) for trk in tracks]
        for i, p in enumerate(params):
            if not p.has_covariance:
                raise NoCovarianceError(f"track {i} has no covariance; cannot build track density")

        entries: List[TrackDensityEntry] = []
        z0_cut = self.z0_significance_cut
        for p in params:
            d0 = p.d0
            z0 = p.z0
            cov = p.covariance
            cov_dd = float(cov[D0, D0])
            cov_zz = float(cov[Z0, Z0])
            cov_dz = float(cov[D0, Z0])
            det = cov_dd * cov_zz - cov_dz * cov_dz
            if cov_dd <= 0.0 or cov_zz <= 0.0 or det <= 0.0:
                continue
            if d0 * d0 / cov_dd > self.d0_significance_cut:
                continue

            c0 = -(d0 * d0 * cov_zz + z0 * z0 * cov_dd + 2.0 * d0 * z0 * cov_dz) / (2.0 * det)
            c1 = (d0 * cov_dz + z0 * cov_dd) / det
            c2 = -cov_dd / (2.0 * det)
            disc = c1 * c1 - 4.0 * c2 * (c0 + 2.0 * z0_cut)
            if disc < 0.0:
                continue
            disc = np.sqrt(disc)
            upper = (-c1 - disc) / (2.0 * c2)
            lower = (-c1 + disc) / (2.0 * c2)
            c0 -= np.log(2.0 * np.pi * np.sqrt(det))
            entries.append(TrackDensityEntry(z0, c0, c1, c2, lower, upper))

        state.track_entries.extend(entries)
        logger.debug("Track density: %d of %d tracks accepted", len(entries), len(params))

    def _step(self, y: float, dy: float, ddy: float) -> float:
        if self.is_gaussian_shaped:
            return (y * dy) / (dy * dy - y * ddy)
        return -dy / ddy

    def global_maximum_with_width(self,
                                  tracks: Sequence[Any],
                                  state: Optional[DensityState] = None) -> Tuple[float, float]:
        r"""
        Position and width of the highest maximum of the summed track density.

        Every accepted track's :math:`z_0` is used as a starting point; the
        density is recorded there and after each of two refinement steps.
        A point only counts when :math:`\rho > 0` and :math:`\rho'' < 0`, and it
        replaces the incumbent only with a strictly larger density.

        Parameters
        ----------
        tracks : sequence
            Tracks, converted by ``extract_parameters``.
        state : DensityState, optional
            Fresh state to fill; a new one is created when omitted.

        Returns
        -------
        (z, width) : tuple of float
            :math:`z` of the maximum and :math:`\sqrt{-\rho/\rho''}` there, or
            ``(0.0, 0.0)`` when the tracks carry no usable density or no
            maximum is found.
        """
        state = DensityState() if state is None else state
        try:
            self.add_tracks(tracks, state)
        except NoCovarianceError as e:
            logger.warning("Track density not computed: %s", e)
            return 0.0, 0.0
        if not state.track_entries:
            return 0.0, 0.0

        c0, c1, c2, lower, upper = state.as_arrays()
        max_z = 0.0
        max_density = 0.0
        max_second = 0.0
        for entry in state.track_entries:
            trial_z = entry.z
            for n_eval in range(3):
                y, dy, ddy = _density_and_derivatives(trial_z, c0, c1, c2, lower, upper)
                if ddy >= 0.0 or y <= 0.0:
                    break
                if y > max_density:
                    max_z, max_density, max_second = trial_z, y, ddy
                if n_eval < 2:
                    trial_z += self._step(y, dy, ddy)

        if max_density <= 0.0 or max_second >= 0.0:
            return 0.0, 0.0
        return float(max_z), float(np.sqrt(-max_density / max_second))

    def global_maximum(self, tracks: Sequence[Any], state: Optional[DensityState] = None) -> float:
        """Position of the density maximum, see :meth:`global_maximum_with_width`."""
        return self.global_maximum_with_width(tracks, state)[0]
