from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from vertex_reco.track_density import DensityState, GaussianTrackDensity
from vertex_reco.vertex import Vertex, VertexingOptions


__all__ = ["TrackDensityVertexFinder"]

logger = logging.getLogger(__name__)


class TrackDensityVertexFinder:
    r"""
    Seed finder placing a vertex at the maximum of the track density.

    The transverse position and the time come from the beam-spot constraint of
    ``options`` when one is given (origin otherwise); :math:`z` is the global
    maximum of :class:`~vertex_reco.track_density.GaussianTrackDensity`.

    Parameters
    ----------
    density : GaussianTrackDensity, optional
        Density model (default configuration when omitted).
    """

    __slots__ = ("density",)

    def __init__(self, density: Optional[GaussianTrackDensity] = None) -> None:
        self.density = density or GaussianTrackDensity()

    def find(self,
             tracks: Sequence[Any],
             options: Optional[VertexingOptions] = None) -> List[Vertex]:
        r"""
        Return a one-element list with the seed vertex.

        The seed covariance is
        :math:`\mathrm{diag}(\Sigma_{xx}, \Sigma_{yy}, w^2, \Sigma_{tt})` from the
        constraint and the density width :math:`w`; it stays zero when no
        width was found.
        """
        options = options or VertexingOptions()
        z, width = self.density.global_maximum_with_width(tracks, DensityState())

        position = np.zeros(4)
        covariance = np.zeros((4, 4))
        if options.use_constraint:
            position[[0, 1, 3]] = options.constraint_position[[0, 1, 3]]
        position[2] = z
        if width != 0.0:
            if options.use_constraint:
                cc = options.constraint_covariance
                covariance[0, 0] = cc[0, 0]
                covariance[1, 1] = cc[1, 1]
                covariance[3, 3] = cc[3, 3]
            covariance[2, 2] = width * width

        logger.debug("Density seed at z=%.4f (width %.4f) from %d tracks", z, width, len(tracks))
        return [Vertex(position=position, covariance=covariance)]
