import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from vertex_reco.density_vertex_finder import TrackDensityVertexFinder
from vertex_reco.errors import NoCovarianceError
from vertex_reco.track_parameters import BoundTrackParameters
from vertex_reco.track_density import DensityState, GaussianTrackDensity
from vertex_reco.vertex import VertexingOptions


def _track(d0, z0, cov_dd=0.01, cov_zz=0.01):
    cov = np.diag([cov_dd, cov_zz, 1e-4, 1e-4, 1e-6, 1.0])
    return BoundTrackParameters([d0, z0, 0.0, np.pi / 2, 0.5, 0.0], cov)


def test_cluster_of_tracks_peaks_near_common_z():
    tracks = [_track(0.0, z) for z in (4.97, 5.02, 5.04)]
    density = GaussianTrackDensity(d0_significance_cut=3.0, z0_significance_cut=9.0)
    state = DensityState()
    z, width = density.global_maximum_with_width(tracks, state)
    assert abs(z - 5.0) < 0.1
    assert width > 0.0
    assert any(e.lower_bound < z < e.upper_bound for e in state.track_entries)


def test_entry_bounds_follow_z0_cut():
    density = GaussianTrackDensity(z0_significance_cut=9.0)
    state = DensityState()
    density.add_tracks([_track(0.0, 2.0)], state)
    (entry,) = state.track_entries
    # exp(-50 (z - z0)^2) with roots of -50 dz^2 + 18 at dz = 0.6
    assert entry.lower_bound == pytest.approx(1.4)
    assert entry.upper_bound == pytest.approx(2.6)
    assert entry.c2 == pytest.approx(-50.0)


def test_all_tracks_cut_gives_sentinel():
    tracks = [_track(1.0, 3.0), _track(-1.0, 3.1)]
    density = GaussianTrackDensity(d0_significance_cut=3.0)
    assert density.global_maximum_with_width(tracks) == (0.0, 0.0)


def test_empty_input_gives_sentinel():
    assert GaussianTrackDensity().global_maximum_with_width([]) == (0.0, 0.0)


def test_missing_covariance_adds_nothing():
    tracks = [_track(0.0, 1.0), BoundTrackParameters([0.0, 1.0, 0.0, 1.0, 0.5, 0.0])]
    density = GaussianTrackDensity()
    state = DensityState()
    with pytest.raises(NoCovarianceError):
        density.add_tracks(tracks, state)
    assert state.track_entries == []
    assert density.global_maximum_with_width(tracks) == (0.0, 0.0)


@pytest.mark.parametrize("gaussian", [True, False])
def test_single_track_width(gaussian):
    density = GaussianTrackDensity(is_gaussian_shaped=gaussian)
    z, width = density.global_maximum_with_width([_track(0.0, -7.5)])
    assert z == pytest.approx(-7.5)
    assert width == pytest.approx(0.1)


def test_finder_uses_constraint_for_transverse_position():
    tracks = [_track(0.0, z) for z in (1.0, 1.05, 0.98)]
    options = VertexingOptions(constraint_position=[0.2, -0.1, 0.0, 0.5],
                               constraint_covariance=np.diag([0.01, 0.02, 100.0, 4.0]))
    (seed,) = TrackDensityVertexFinder().find(tracks, options)
    assert seed.position[0] == pytest.approx(0.2)
    assert seed.position[1] == pytest.approx(-0.1)
    assert seed.position[3] == pytest.approx(0.5)
    assert abs(seed.position[2] - 1.0) < 0.1
    assert seed.covariance[0, 0] == pytest.approx(0.01)
    assert seed.covariance[3, 3] == pytest.approx(4.0)
    assert seed.covariance[2, 2] > 0.0


def test_finder_without_maximum_has_zero_covariance():
    (seed,) = TrackDensityVertexFinder().find([])
    assert np.all(seed.position == 0.0)
    assert np.all(seed.covariance == 0.0)


def test_step_formulas():
    density = GaussianTrackDensity(is_gaussian_shaped=True)
    assert density._step(2.0, 1.0, -3.0) == pytest.approx(2.0 / 7.0)
    density = GaussianTrackDensity(is_gaussian_shaped=False)
    assert density._step(2.0, 1.0, -3.0) == pytest.approx(1.0 / 3.0)


def _correlated_track():
    # c1 = 140, c2 = -200/3: peak at z = 1.05, away from z0 = 1
    cov = np.diag([0.01, 0.01, 1e-4, 1e-4, 1e-6, 1.0])
    cov[0, 1] = cov[1, 0] = 0.005
    return BoundTrackParameters([0.1, 1.0, 0.0, np.pi / 2, 0.5, 0.0], cov)


def test_gaussian_step_lands_on_peak():
    density = GaussianTrackDensity(is_gaussian_shaped=True)
    z, width = density.global_maximum_with_width([_correlated_track()])
    assert z == pytest.approx(1.05, abs=1e-9)
    assert width == pytest.approx(np.sqrt(0.0075), rel=1e-6)


def test_newton_step_refines_towards_peak():
    # offsets from the peak: -0.05 -> +0.025 -> -0.025 / 11
    density = GaussianTrackDensity(is_gaussian_shaped=False)
    z = density.global_maximum([_correlated_track()])
    assert z == pytest.approx(1.05 - 0.025 / 11.0, abs=1e-9)
