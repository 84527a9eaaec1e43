from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from vertex_reco.billoir_fitter import FullBilloirVertexFitter
from vertex_reco.density_vertex_finder import TrackDensityVertexFinder
from vertex_reco.errors import VertexingError
from vertex_reco.linearizer import TrackLinearizer
from vertex_reco.track_parameters import BoundTrackParameters
from vertex_reco.vertex import Vertex, VertexingOptions


__all__ = ["FitSummary", "VertexFitterAlgorithm"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FitSummary:
    """Bookkeeping of one :meth:`VertexFitterAlgorithm.execute` call."""
    n_candidates: int = 0
    n_fitted: int = 0
    n_skipped: int = 0
    failures: Dict[str, int] = field(default_factory=dict)

    def record_failure(self, code: str) -> None:
        self.failures[code] = self.failures.get(code, 0) + 1


class VertexFitterAlgorithm:
    r"""
    Fit one vertex per proto vertex (a list of track indices).

    A failing candidate is logged and skipped; it never aborts the batch.

    Parameters
    ----------
    fitter : FullBilloirVertexFitter
        Vertex fitter.
    linearizer : TrackLinearizer
        Linearizer handed to every fit.
    constrained : bool, optional
        Fit with the beam-spot constraint below. Unconstrained fits of fewer
        than two tracks are skipped.
    constraint_position : array_like, shape (3,) or (4,), optional
        Beam-spot position.
    constraint_covariance : array_like, shape (3, 3) or (4, 4), optional
        Beam-spot covariance.
    seeder : TrackDensityVertexFinder or None, optional
        Seeds unconstrained fits at the density maximum; ``None`` starts them
        at the origin.
    """

    __slots__ = ("fitter", "linearizer", "constrained", "constraint_position",
                 "constraint_covariance", "seeder", "last_summary")

    def __init__(self,
                 fitter: FullBilloirVertexFitter,
                 linearizer: TrackLinearizer,
                 constrained: bool = False,
                 constraint_position: Optional[Sequence[float]] = None,
                 constraint_covariance: Optional[np.ndarray] = None,
                 seeder: Optional[TrackDensityVertexFinder] = None) -> None:
        self.fitter = fitter
        self.linearizer = linearizer
        self.constrained = bool(constrained)
        self.constraint_position = constraint_position
        self.constraint_covariance = constraint_covariance
        self.seeder = seeder
        self.last_summary = FitSummary()
        if self.constrained and constraint_covariance is None:
            raise ValueError("constrained fitting requires a constraint covariance")

    def _options_for(self, tracks: Sequence[BoundTrackParameters]) -> VertexingOptions:
        if self.constrained:
            return VertexingOptions(constraint_position=self.constraint_position,
                                    constraint_covariance=self.constraint_covariance)
        seed = None
        if self.seeder is not None:
            seed = self.seeder.find(tracks)[0].position
        return VertexingOptions(seed_position=seed)

    def execute(self,
                track_parameters: Sequence[BoundTrackParameters],
                proto_vertices: Sequence[Sequence[int]]) -> List[Vertex]:
        r"""
        Fit every proto vertex.

        Parameters
        ----------
        track_parameters : sequence of BoundTrackParameters
            All tracks of the event.
        proto_vertices : sequence of sequence of int
            Track indices of each vertex candidate.

        Returns
        -------
        list of Vertex
            Successfully fitted vertices, in proto-vertex order. Counts are
            kept in :attr:`last_summary`.
        """
        summary = FitSummary(n_candidates=len(proto_vertices))
        fitted: List[Vertex] = []
        logger.debug("Have %d track parameters and %d proto vertices",
                     len(track_parameters), len(proto_vertices))

        for iv, proto in enumerate(proto_vertices):
            if not self.constrained and len(proto) < 2:
                logger.info("Skip unconstrained vertex fit on proto vertex %d with less than two tracks", iv)
                summary.n_skipped += 1
                continue

            tracks: List[BoundTrackParameters] = []
            for idx in proto:
                if not 0 <= int(idx) < len(track_parameters):
                    logger.error("Track parameters %s do not exist", idx)
                    continue
                tracks.append(track_parameters[int(idx)])
            if not tracks:
                summary.n_skipped += 1
                continue

            state = self.fitter.make_state(self.linearizer)
            try:
                vertex = self.fitter.fit(tracks, self.linearizer, self._options_for(tracks), state)
            except VertexingError as e:
                kind = "constrained " if self.constrained else ""
                logger.error("Error in %svertex fitter (proto vertex %d): %s", kind, iv, e)
                summary.record_failure(e.code)
                continue

            fitted.append(vertex)
            summary.n_fitted += 1
            logger.debug("Fitted vertex %s with %d tracks", vertex.position, vertex.n_tracks)

        if not fitted:
            logger.debug("No fitted vertex")
        logger.info("Fitted %d of %d proto vertices (%d skipped, failures: %s)",
                    summary.n_fitted, summary.n_candidates, summary.n_skipped,
                    summary.failures or "none")
        self.last_summary = summary
        return fitted
