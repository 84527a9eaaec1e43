import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from vertex_reco.billoir_fitter import FullBilloirVertexFitter
from vertex_reco.density_vertex_finder import TrackDensityVertexFinder
from vertex_reco.errors import LinearizationError, NoCovarianceError, SingularMatrixError
from vertex_reco.field import ConstantMagneticField
from vertex_reco.linearizer import (
    LinearizedTrack,
    LinearizerState,
    NumericalTrackLinearizer,
    TrackLinearizer,
)
from vertex_reco.simulation import make_tracks_from_vertex
from vertex_reco.track_density import GaussianTrackDensity
from vertex_reco.track_parameters import BoundTrackParameters
from vertex_reco.vertex import VertexingOptions


TRUE_VERTEX = np.array([0.05, -0.03, 5.0, 0.2])

MOMENTA = np.array([
    [0.3, 1.2, 0.5],
    [1.9, 1.6, -0.8],
    [-2.4, 2.0, 0.3],
    [-0.7, 0.9, -0.4],
    [2.8, 1.4, 1.1],
])


def _linearizer():
    return NumericalTrackLinearizer(ConstantMagneticField(2.0))


def _ideal_tracks(n=len(MOMENTA), vertex=TRUE_VERTEX):
    return make_tracks_from_vertex(vertex, MOMENTA[:n], bz=2.0)


def test_ideal_tracks_converge_to_true_vertex():
    tracks = _ideal_tracks()
    fitter = FullBilloirVertexFitter(max_iterations=10)
    vtx = fitter.fit(tracks, _linearizer())
    assert np.allclose(vtx.position, TRUE_VERTEX, atol=1e-5)
    assert vtx.chi2 == pytest.approx(0.0, abs=1e-6)
    assert vtx.ndf == 2 * len(tracks) - 4
    assert vtx.n_tracks == len(tracks)
    for i, trk_at_vtx in enumerate(vtx.tracks):
        assert np.allclose(trk_at_vtx.momentum, MOMENTA[i], atol=1e-5)
        assert trk_at_vtx.parameters[5] == pytest.approx(vtx.position[3])
        assert trk_at_vtx.original_track is tracks[i]


def test_covariances_are_symmetric_positive():
    vtx = FullBilloirVertexFitter().fit(_ideal_tracks(), _linearizer())
    assert np.allclose(vtx.covariance, vtx.covariance.T)
    assert np.all(np.linalg.eigvalsh(vtx.covariance) > 0.0)
    for trk in vtx.tracks:
        assert trk.momentum_covariance.shape == (3, 3)
        assert trk.cross_covariance.shape == (4, 3)
        assert np.all(np.diag(trk.parameter_covariance) >= 0.0)


def test_two_tracks_have_no_degrees_of_freedom():
    vtx = FullBilloirVertexFitter(max_iterations=10).fit(_ideal_tracks(2), _linearizer())
    assert vtx.ndf == 0


def test_tight_constraint_dominates():
    beam = np.array([0.5, 0.5, 2.0, 0.0])
    options = VertexingOptions(constraint_position=beam,
                               constraint_covariance=np.eye(4) * 1e-12)
    vtx = FullBilloirVertexFitter().fit(_ideal_tracks(), _linearizer(), options)
    assert np.allclose(vtx.position, beam, atol=1e-4)
    assert vtx.ndf == 2 * len(MOMENTA)
    assert vtx.chi2 > 0.0


def test_loose_constraint_keeps_track_information():
    options = VertexingOptions(constraint_position=[0.0, 0.0, 0.0],
                               constraint_covariance=np.diag([1e6, 1e6, 1e6]))
    vtx = FullBilloirVertexFitter(max_iterations=10).fit(_ideal_tracks(), _linearizer(), options)
    assert np.allclose(vtx.position[:3], TRUE_VERTEX[:3], atol=1e-3)


def test_refit_is_reproducible():
    tracks = make_tracks_from_vertex(TRUE_VERTEX, MOMENTA, bz=2.0, rng=np.random.default_rng(7))
    fitter = FullBilloirVertexFitter()
    lin = _linearizer()
    state = fitter.make_state(lin)
    a = fitter.fit(tracks, lin, state=state)
    first = state.position.copy()
    state.reset()
    assert state.position is None
    assert state.n_iterations == 0
    b = fitter.fit(tracks, lin, state=state)
    assert np.array_equal(a.position, b.position)
    assert np.array_equal(state.position, first)
    assert a.chi2 == b.chi2


def test_density_seed_and_fit_agree():
    vertex = np.array([0.0, 0.0, 5.0, 0.0])
    tracks = make_tracks_from_vertex(vertex, MOMENTA, bz=2.0)
    (seed,) = TrackDensityVertexFinder().find(tracks)
    assert abs(seed.position[2] - 5.0) < 0.1
    vtx = FullBilloirVertexFitter().fit(tracks, _linearizer(),
                                        VertexingOptions(seed_position=seed.position))
    assert vtx.position[2] == pytest.approx(seed.position[2], abs=1e-4)


def test_update_tolerance_stops_early():
    fitter = FullBilloirVertexFitter(max_iterations=20, update_tolerance=1e-6)
    lin = _linearizer()
    state = fitter.make_state(lin)
    fitter.fit(_ideal_tracks(), lin, state=state)
    assert 1 < state.n_iterations < 20

    fixed = FullBilloirVertexFitter(max_iterations=4)
    state = fixed.make_state(lin)
    fixed.fit(_ideal_tracks(), lin, state=state)
    assert state.n_iterations == 4


def test_empty_input_gives_empty_vertex():
    vtx = FullBilloirVertexFitter().fit([], _linearizer())
    assert vtx.n_tracks == 0
    assert np.all(vtx.position == 0.0)


def test_missing_covariance():
    tracks = _ideal_tracks(2) + [BoundTrackParameters([0.0, 0.0, 0.0, 1.0, 0.5, 0.0])]
    with pytest.raises(NoCovarianceError):
        FullBilloirVertexFitter().fit(tracks, _linearizer())


class _FlatLinearizer(TrackLinearizer):
    """Tracks that carry no information on the vertex position."""

    def make_state(self):
        return LinearizerState(field_cache=ConstantMagneticField(0.0).make_cache())

    def linearize_track(self, params, linearization_point, state):
        E = np.zeros((6, 3))
        E[2:5, :] = np.eye(3)
        return LinearizedTrack(
            parameters_at_pca=np.array(params.parameters),
            covariance_at_pca=np.eye(6),
            weight_at_pca=np.eye(6),
            position_jacobian=np.zeros((6, 4)),
            momentum_jacobian=E,
            position_at_pca=np.zeros(4),
            momentum_at_pca=params.momentum,
            constant_term=np.zeros(6),
            linearization_point=np.asarray(linearization_point, dtype=float),
        )


class _FailingLinearizer(_FlatLinearizer):

    def linearize_track(self, params, linearization_point, state):
        raise LinearizationError("no helix through this point")


def test_singular_vertex_matrix_leaves_state_untouched():
    fitter = FullBilloirVertexFitter()
    lin = _FlatLinearizer()
    state = fitter.make_state(lin)
    with pytest.raises(SingularMatrixError):
        fitter.fit(_ideal_tracks(), lin, state=state)
    assert state.position is None
    assert state.n_iterations == 0


def test_linearization_error_propagates():
    with pytest.raises(LinearizationError):
        FullBilloirVertexFitter().fit(_ideal_tracks(), _FailingLinearizer())


def test_extractor_is_applied():
    wrapped = [{"params": t} for t in _ideal_tracks()]
    fitter = FullBilloirVertexFitter(max_iterations=10, extract_parameters=lambda d: d["params"])
    vtx = fitter.fit(wrapped, _linearizer())
    assert np.allclose(vtx.position, TRUE_VERTEX, atol=1e-5)
    assert vtx.tracks[0].original_track is wrapped[0]


def test_default_runs_five_iterations_and_converges():
    fitter = FullBilloirVertexFitter()
    assert fitter.max_iterations == 5
    lin = _linearizer()
    state = fitter.make_state(lin)
    vtx = fitter.fit(_ideal_tracks(3), lin, state=state)
    assert state.n_iterations == 5
    assert np.allclose(vtx.position, TRUE_VERTEX, atol=1e-6)
    assert vtx.chi2 == pytest.approx(0.0, abs=1e-6)


def test_smeared_seed_then_fit():
    vertex = np.array([0.0, 0.0, 5.0, 0.0])
    ideal = make_tracks_from_vertex(vertex, MOMENTA[:3], bz=2.0)
    offsets = np.array([
        [0.02, -0.03, 0.002, -0.001, 0.0, 0.0],
        [-0.01, 0.02, -0.001, 0.002, 0.0, 0.0],
        [0.015, 0.04, 0.001, 0.001, 0.0, 0.0],
    ])
    tracks = [BoundTrackParameters(t.parameters + d, t.covariance, t.reference)
              for t, d in zip(ideal, offsets)]
    assert all(t.covariance[1, 1] == pytest.approx(0.01) for t in tracks)

    density = GaussianTrackDensity(d0_significance_cut=3.0, z0_significance_cut=9.0)
    (seed,) = TrackDensityVertexFinder(density).find(tracks)
    assert abs(seed.position[2] - 5.0) < 0.1

    options = VertexingOptions(seed_position=seed.position)
    lin = _linearizer()
    default = FullBilloirVertexFitter().fit(tracks, lin, options)
    long_run = FullBilloirVertexFitter(max_iterations=30).fit(tracks, lin, options)
    assert np.allclose(default.position, long_run.position, atol=1e-4)
    assert default.chi2 == pytest.approx(long_run.chi2, rel=1e-3, abs=1e-6)


def test_options_reject_oversized_position():
    assert np.array_equal(VertexingOptions(seed_position=[1.0, 2.0, 3.0]).seed_position,
                          [1.0, 2.0, 3.0, 0.0])
    with pytest.raises(ValueError):
        VertexingOptions(seed_position=[0.0, 0.0, 0.0, 0.0, 1.0])
