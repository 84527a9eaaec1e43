from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from vertex_reco.track_parameters import (
    PION_MASS,
    BoundTrackParameters,
    state_to_perigee,
    wrap_phi,
)


__all__ = [
    "DEFAULT_TRACK_COVARIANCE",
    "random_momenta",
    "make_tracks_from_vertex",
]

# d0, z0 [mm^2]; phi, theta [rad^2]; qop [GeV^-2]; t [ns^2]
DEFAULT_TRACK_COVARIANCE = np.diag([1e-2, 1e-2, 1e-4, 1e-4, 1e-6, 1e-2])


def random_momenta(n: int,
                   rng: np.random.Generator,
                   pt_range: Tuple[float, float] = (0.5, 5.0),
                   eta_range: Tuple[float, float] = (-2.0, 2.0)) -> np.ndarray:
    r"""
    Draw ``n`` momentum triples ``(phi, theta, qop)``.

    :math:`\phi` is uniform, :math:`\eta` uniform in ``eta_range`` with
    :math:`\theta = 2\arctan e^{-\eta}`, :math:`p_T` uniform in ``pt_range`` and
    the charge :math:`\pm1` with equal probability, so that
    :math:`q/p = q\sin\theta/p_T`.
    """
    phi = rng.uniform(-np.pi, np.pi, n)
    eta = rng.uniform(eta_range[0], eta_range[1], n)
    theta = 2.0 * np.arctan(np.exp(-eta))
    pt = rng.uniform(pt_range[0], pt_range[1], n)
    q = rng.choice([-1.0, 1.0], n)
    return np.column_stack([phi, theta, q * np.sin(theta) / pt])


def make_tracks_from_vertex(vertex: Sequence[float],
                            momenta: np.ndarray,
                            *,
                            bz: float = 2.0,
                            reference: Sequence[float] = (0.0, 0.0, 0.0),
                            covariance: Optional[np.ndarray] = None,
                            rng: Optional[np.random.Generator] = None,
                            mass: float = PION_MASS) -> List[BoundTrackParameters]:
    r"""
    Perigee parameters of tracks emerging from a known 4D vertex.

    Each track is the helix through ``vertex`` with the given momentum,
    expressed at the perigee of ``reference``. When ``rng`` is given, the
    parameters are smeared with :math:`\mathcal{N}(0, \Sigma)`.

    Parameters
    ----------
    vertex : array_like, shape (4,)
        True ``(x, y, z, t)``.
    momenta : ndarray, shape (N, 3)
        ``(phi, theta, qop)`` at the vertex.
    bz : float, optional
        Field strength (T). Default ``2.0``.
    reference : array_like, shape (3,), optional
        Perigee reference (default origin).
    covariance : ndarray, shape (6, 6), optional
        Covariance attached to every track (default
        :data:`DEFAULT_TRACK_COVARIANCE`).
    rng : numpy.random.Generator, optional
        Smearing source; no smearing when ``None``.
    mass : float, optional
        Mass hypothesis (GeV).

    Returns
    -------
    list of BoundTrackParameters
    """
    cov = DEFAULT_TRACK_COVARIANCE if covariance is None else np.asarray(covariance, dtype=np.float64)
    ref = np.asarray(reference, dtype=np.float64)
    vtx = np.asarray(vertex, dtype=np.float64)
    tracks: List[BoundTrackParameters] = []
    for mom in np.atleast_2d(momenta):
        q = state_to_perigee(vtx, mom, ref, bz, mass)
        if rng is not None:
            q = q + rng.multivariate_normal(np.zeros(6), cov)
            q[2] = wrap_phi(q[2])
        tracks.append(BoundTrackParameters(q, cov, ref))
    return tracks
