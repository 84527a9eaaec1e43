from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from vertex_reco.errors import NoCovarianceError, NumericFailureError
from vertex_reco.linalg import chi2_quadratic, spd_factor, spd_inverse, spd_solve, symmetrize
from vertex_reco.linearizer import LinearizedTrack, LinearizerState, TrackLinearizer
from vertex_reco.track_parameters import (
    PHI,
    BoundTrackParameters,
    ParameterExtractor,
    identity_extractor,
    normalize_phi_theta,
    wrap_phi,
)
from vertex_reco.vertex import TrackAtVertex, Vertex, VertexingOptions


__all__ = ["BilloirTrack", "BilloirVertex", "FitState", "FullBilloirVertexFitter"]


@dataclass(slots=True)
class BilloirTrack:
    r"""
    Normal-equation blocks of one track for one iteration.

    With residual :math:`\delta\mathbf{q}`, weight :math:`\mathbf{W}` and
    Jacobians :math:`\mathbf{D}`, :math:`\mathbf{E}`:

    .. math::

        \mathbf{A}_i = \mathbf{D}^\top\mathbf{W}\mathbf{D},\quad
        \mathbf{B}_i = \mathbf{D}^\top\mathbf{W}\mathbf{E},\quad
        \mathbf{C}_i = \mathbf{E}^\top\mathbf{W}\mathbf{E},\quad
        \mathbf{T}_i = \mathbf{D}^\top\mathbf{W}\,\delta\mathbf{q},\quad
        \mathbf{U}_i = \mathbf{E}^\top\mathbf{W}\,\delta\mathbf{q}.
    """
    index: int
    linearized: LinearizedTrack
    delta_q: np.ndarray
    A: np.ndarray
    B: np.ndarray
    C_inv: np.ndarray
    T: np.ndarray
    U: np.ndarray
    BC_inv: np.ndarray
    chi2: float = 0.0

    @classmethod
    def from_linearized(cls,
                        index: int,
                        lt: LinearizedTrack,
                        momentum: np.ndarray,
                        time: float) -> "BilloirTrack":
        """Residual and blocks of track ``index`` at the current momentum estimate."""
        predicted = np.array([0.0, 0.0, momentum[0], momentum[1], momentum[2], time])
        delta_q = lt.parameters_at_pca - predicted
        delta_q[PHI] = wrap_phi(delta_q[PHI])
        W = lt.weight_at_pca
        D = lt.position_jacobian
        E = lt.momentum_jacobian
        DtW = D.T @ W
        EtW = E.T @ W
        C_inv = spd_inverse(EtW @ E, what=f"momentum block of track {index}")
        B = DtW @ E
        return cls(
            index=index,
            linearized=lt,
            delta_q=delta_q,
            A=DtW @ D,
            B=B,
            C_inv=C_inv,
            T=DtW @ delta_q,
            U=EtW @ delta_q,
            BC_inv=B @ C_inv,
        )

    def momentum_update(self, delta_v: np.ndarray) -> np.ndarray:
        r""":math:`\delta\mathbf{p}_i = \mathbf{C}_i^{-1}(\mathbf{U}_i - \mathbf{B}_i^\top\delta V)`."""
        return self.C_inv @ (self.U - self.B.T @ delta_v)

    def residual_chi2(self, delta_v: np.ndarray, delta_p: np.ndarray) -> float:
        lt = self.linearized
        r = self.delta_q - lt.position_jacobian @ delta_v - lt.momentum_jacobian @ delta_p
        return chi2_quadratic(r, lt.weight_at_pca)


@dataclass(slots=True)
class BilloirVertex:
    r"""
    Per-iteration sums of the track blocks.

    The momentum unknowns of each track only couple to the vertex, so they are
    eliminated with the Schur complement:

    .. math::

        \Bigl(\sum_i \mathbf{A}_i - \mathbf{B}_i\mathbf{C}_i^{-1}\mathbf{B}_i^\top\Bigr)\,\delta V
        = \sum_i \mathbf{T}_i - \mathbf{B}_i\mathbf{C}_i^{-1}\mathbf{U}_i.
    """
    A: np.ndarray = field(default_factory=lambda: np.zeros((4, 4)))
    T: np.ndarray = field(default_factory=lambda: np.zeros(4))
    BCB: np.ndarray = field(default_factory=lambda: np.zeros((4, 4)))
    BCU: np.ndarray = field(default_factory=lambda: np.zeros(4))
    tracks: List[BilloirTrack] = field(default_factory=list)

    def add(self, track: BilloirTrack) -> None:
        self.A += track.A
        self.T += track.T
        self.BCB += track.BC_inv @ track.B.T
        self.BCU += track.BC_inv @ track.U
        self.tracks.append(track)

    def reduced(self) -> Tuple[np.ndarray, np.ndarray]:
        """Reduced 4x4 weight matrix and right-hand side."""
        return symmetrize(self.A - self.BCB), self.T - self.BCU


@dataclass(slots=True)
class FitState:
    r"""
    Call-scoped state of :meth:`FullBilloirVertexFitter.fit`.

    Holds the linearizer resources (field cache) and, after a successful fit,
    the converged estimate. A failed fit leaves it untouched. Use one state per
    concurrently running fit.
    """
    linearizer_state: LinearizerState
    position: Optional[np.ndarray] = None
    momenta: Optional[np.ndarray] = None
    covariance: Optional[np.ndarray] = None
    n_iterations: int = 0

    def reset(self) -> None:
        self.position = None
        self.momenta = None
        self.covariance = None
        self.n_iterations = 0


class FullBilloirVertexFitter:
    r"""
    Billoir vertex fitter: one 4D vertex and one momentum per track.

    Each iteration linearizes every track at the current vertex estimate,
    solves the reduced normal equations (:class:`BilloirVertex`) for the vertex
    correction :math:`\delta V`, back-substitutes the momentum corrections
    (:meth:`BilloirTrack.momentum_update`) and moves the linearization point to
    :math:`V + \delta V`. An optional prior acts as one more measurement of the
    vertex with weight :math:`\mathbf{W}_c = \Sigma_c^{-1}`:

    .. math::

        \mathbf{M} \leftarrow \mathbf{M} + \mathbf{W}_c,\qquad
        \mathbf{b} \leftarrow \mathbf{b} + \mathbf{W}_c\,(\mathbf{c} - V).

    Covariances follow from the inverse of the full block system:

    .. math::

        \mathrm{cov}(V) = \mathbf{M}^{-1},\quad
        \mathrm{cov}(V, \mathbf{p}_i) = -\mathrm{cov}(V)\,\mathbf{B}_i\mathbf{C}_i^{-1},\quad
        \mathrm{cov}(\mathbf{p}_i) = \mathbf{C}_i^{-1}
            + (\mathbf{B}_i\mathbf{C}_i^{-1})^\top\mathrm{cov}(V)\,\mathbf{B}_i\mathbf{C}_i^{-1}.

    Parameters
    ----------
    max_iterations : int, optional
        Number of linearize-and-solve iterations. Default ``5``.
    update_tolerance : float or None, optional
        If set, stop early once :math:`\|\delta V\|` drops below it. ``None``
        (default) always runs ``max_iterations`` iterations.
    extract_parameters : callable, optional
        ``track -> BoundTrackParameters``; identity by default.

    Notes
    -----
    The degrees of freedom are :math:`2N - 4`, plus :math:`4` with a
    constraint. Results are built from the final iteration.
    """

    __slots__ = ("max_iterations", "update_tolerance", "extract_parameters", "log")

    def __init__(self,
                 max_iterations: int = 5,
                 update_tolerance: Optional[float] = None,
                 extract_parameters: ParameterExtractor = identity_extractor) -> None:
        if int(max_iterations) < 1:
            raise ValueError("max_iterations must be >= 1")
        self.max_iterations = int(max_iterations)
        self.update_tolerance = None if update_tolerance is None else float(update_tolerance)
        self.extract_parameters = extract_parameters
        self.log = logging.getLogger(self.__class__.__name__)

    def make_state(self, linearizer: TrackLinearizer) -> FitState:
        """Fresh :class:`FitState` with its own field cache."""
        return FitState(linearizer_state=linearizer.make_state())

    def fit(self,
            tracks: Sequence[Any],
            linearizer: TrackLinearizer,
            options: Optional[VertexingOptions] = None,
            state: Optional[FitState] = None) -> Vertex:
        r"""
        Fit one vertex to ``tracks``.

        Parameters
        ----------
        tracks : sequence
            Input tracks, converted by ``extract_parameters``. An unconstrained
            fit needs at least two tracks (checked by the caller).
        linearizer : TrackLinearizer
            Provides :class:`~vertex_reco.linearizer.LinearizedTrack` objects.
        options : VertexingOptions, optional
            Constraint and seed. Default: unconstrained, seeded at the origin.
        state : FitState, optional
            Call-scoped state; created from ``linearizer`` when omitted.

        Returns
        -------
        Vertex
            Fitted vertex with refitted tracks. An empty ``tracks`` gives an
            empty vertex at the origin.

        Raises
        ------
        NoCovarianceError
            If a track has no covariance.
        SingularMatrixError
            If a momentum block or the reduced vertex matrix is not SPD.
        LinearizationError
            Propagated from ``linearizer``.
        NumericFailureError
            If the chi-square is not finite.
        """
        options = options or VertexingOptions()
        state = state if state is not None else self.make_state(linearizer)
        params: List[BoundTrackParameters] = [self.extract_parameters(t) for t in tracks]
        n_tracks = len(params)
        if n_tracks == 0:
            return Vertex()
        for i, p in enumerate(params):
            if not p.has_covariance:
                raise NoCovarianceError(f"track {i} has no covariance; cannot fit vertex")

        constrained = options.use_constraint
        ndf = 2.0 * n_tracks + (4.0 if constrained else 0.0) - 4.0
        if constrained:
            W_c = spd_inverse(options.constraint_covariance, what="constraint covariance")
            c_pos = options.constraint_position

        lin_point = options.starting_point()
        momenta = np.array([p.momentum for p in params], dtype=np.float64)

        n_iter = 0
        for n_iter in range(1, self.max_iterations + 1):
            vertex_sums = BilloirVertex()
            for i, p in enumerate(params):
                lt = linearizer.linearize_track(p, lin_point, state.linearizer_state)
                vertex_sums.add(BilloirTrack.from_linearized(i, lt, momenta[i], lin_point[3]))

            matrix, rhs = vertex_sums.reduced()
            if constrained:
                rhs = rhs + W_c @ (c_pos - lin_point)
                matrix = matrix + W_c
            factor = spd_factor(matrix, what="reduced vertex matrix")
            delta_v = spd_solve(factor, rhs)
            cov_v = symmetrize(spd_solve(factor, np.eye(4)))

            chi2 = 0.0
            new_momenta = momenta.copy()
            for bt in vertex_sums.tracks:
                delta_p = bt.momentum_update(delta_v)
                mom = momenta[bt.index] + delta_p
                mom[0], mom[1] = normalize_phi_theta(mom[0], mom[1])
                new_momenta[bt.index] = mom
                bt.chi2 = bt.residual_chi2(delta_v, delta_p)
                chi2 += bt.chi2

            lin_point = lin_point + delta_v
            momenta = new_momenta
            if constrained:
                chi2 += chi2_quadratic(lin_point - c_pos, W_c)
            if not np.isfinite(chi2):
                raise NumericFailureError(f"non-finite chi2 at iteration {n_iter}")

            step = float(np.linalg.norm(delta_v))
            self.log.debug("Billoir iteration %d: chi2=%.6g |dV|=%.3g", n_iter, chi2, step)
            if self.update_tolerance is not None and step < self.update_tolerance:
                break

        vertex = self._build_vertex(tracks, vertex_sums, lin_point, cov_v, momenta, chi2, ndf)

        state.position = lin_point.copy()
        state.momenta = momenta.copy()
        state.covariance = cov_v.copy()
        state.n_iterations = n_iter
        return vertex

    @staticmethod
    def _build_vertex(tracks: Sequence[Any],
                      vertex_sums: BilloirVertex,
                      position: np.ndarray,
                      cov_v: np.ndarray,
                      momenta: np.ndarray,
                      chi2: float,
                      ndf: float) -> Vertex:
        r"""
        Assemble the result from the last iteration's blocks.

        The refitted perigee covariance uses the Jacobian of
        ``(d0, z0, phi, theta, qop, t)`` with respect to
        ``(x, y, z, t, phi, theta, qop)`` at the vertex.
        """
        tracks_at_vertex: List[TrackAtVertex] = []
        for bt in vertex_sums.tracks:
            cross = -cov_v @ bt.BC_inv
            mom_cov = symmetrize(bt.C_inv + bt.BC_inv.T @ cov_v @ bt.BC_inv)
            full = np.zeros((7, 7))
            full[:4, :4] = cov_v
            full[:4, 4:] = cross
            full[4:, :4] = cross.T
            full[4:, 4:] = mom_cov
            D = bt.linearized.position_jacobian
            J = np.zeros((6, 7))
            J[0:2, 0:3] = D[0:2, 0:3]
            J[2, 4] = J[3, 5] = J[4, 6] = 1.0
            J[5, 0:4] = D[5, 0:4]
            mom = momenta[bt.index]
            tracks_at_vertex.append(TrackAtVertex(
                original_track=tracks[bt.index],
                momentum=mom.copy(),
                momentum_covariance=mom_cov,
                cross_covariance=cross,
                parameters=np.array([0.0, 0.0, mom[0], mom[1], mom[2], position[3]]),
                parameter_covariance=symmetrize(J @ full @ J.T),
                chi2=float(bt.chi2),
            ))
        return Vertex(position=position.copy(), covariance=cov_v.copy(),
                      tracks=tracks_at_vertex, chi2=float(chi2), ndf=float(ndf))
