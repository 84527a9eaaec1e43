import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import logging

import numpy as np
import pytest

from vertex_reco.algorithm import VertexFitterAlgorithm
from vertex_reco.billoir_fitter import FullBilloirVertexFitter
from vertex_reco.density_vertex_finder import TrackDensityVertexFinder
from vertex_reco.field import ConstantMagneticField
from vertex_reco.linearizer import NumericalTrackLinearizer
from vertex_reco.simulation import make_tracks_from_vertex, random_momenta
from vertex_reco.track_parameters import BoundTrackParameters


def _event():
    rng = np.random.default_rng(11)
    a = make_tracks_from_vertex([0.0, 0.0, -20.0, 0.0], random_momenta(6, rng), bz=2.0)
    b = make_tracks_from_vertex([0.0, 0.0, 35.0, 0.0], random_momenta(6, rng), bz=2.0)
    return a + b, [list(range(6)), list(range(6, 12))]


def _algorithm(**kw):
    lin = NumericalTrackLinearizer(ConstantMagneticField(2.0))
    return VertexFitterAlgorithm(FullBilloirVertexFitter(max_iterations=8), lin,
                                 seeder=TrackDensityVertexFinder(), **kw)


def test_fits_every_proto_vertex():
    tracks, protos = _event()
    alg = _algorithm()
    vertices = alg.execute(tracks, protos)
    assert len(vertices) == 2
    assert vertices[0].position[2] == pytest.approx(-20.0, abs=1e-4)
    assert vertices[1].position[2] == pytest.approx(35.0, abs=1e-4)
    assert alg.last_summary.n_fitted == 2


def test_single_track_unconstrained_is_skipped(caplog):
    tracks, protos = _event()
    alg = _algorithm()
    with caplog.at_level(logging.INFO):
        vertices = alg.execute(tracks, [[0]] + protos)
    assert len(vertices) == 2
    assert alg.last_summary.n_skipped == 1
    assert "less than two tracks" in caplog.text


def test_failing_candidate_does_not_abort_batch(caplog):
    tracks, protos = _event()
    tracks.append(BoundTrackParameters([0.0, 1.0, 0.0, 1.0, 0.5, 0.0]))
    alg = _algorithm()
    with caplog.at_level(logging.ERROR):
        vertices = alg.execute(tracks, [protos[0], [5, 12], protos[1]])
    assert len(vertices) == 2
    assert alg.last_summary.failures == {"no_covariance": 1}
    assert "Error in vertex fitter" in caplog.text


def test_missing_track_index_is_reported(caplog):
    tracks, protos = _event()
    alg = _algorithm()
    with caplog.at_level(logging.ERROR):
        vertices = alg.execute(tracks, [protos[0] + [99]])
    assert len(vertices) == 1
    assert vertices[0].n_tracks == 6
    assert "do not exist" in caplog.text


def test_constrained_mode():
    tracks, protos = _event()
    alg = _algorithm(constrained=True,
                     constraint_position=[0.0, 0.0, 0.0, 0.0],
                     constraint_covariance=np.diag([0.01, 0.01, 1e4, 1e4]))
    vertices = alg.execute(tracks, [[0]] + protos)
    assert len(vertices) == 3
    assert vertices[0].ndf == 2.0
    assert vertices[1].position[2] == pytest.approx(-20.0, abs=0.01)


def test_constrained_requires_covariance():
    lin = NumericalTrackLinearizer(ConstantMagneticField(2.0))
    with pytest.raises(ValueError):
        VertexFitterAlgorithm(FullBilloirVertexFitter(), lin, constrained=True)
