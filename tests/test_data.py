import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pandas as pd
import pytest

from vertex_reco.data import (
    covariance_columns,
    load_tracks,
    proto_vertices_from_frame,
    tracks_from_frame,
    tracks_to_frame,
    write_vertices,
)
from vertex_reco.main import load_config, main
from vertex_reco.simulation import make_tracks_from_vertex
from vertex_reco.vertex import Vertex


def test_covariance_columns_upper_triangle():
    cols = covariance_columns()
    assert len(cols) == 21
    assert cols[0] == "cov_d0_d0"
    assert cols[1] == "cov_d0_z0"
    assert cols[-1] == "cov_t_t"


def test_frame_keeps_parameters_and_covariance():
    cov = np.diag([1e-2, 2e-2, 1e-4, 1e-4, 1e-6, 1e-2])
    cov[0, 1] = cov[1, 0] = 1e-3
    tracks = make_tracks_from_vertex([0.0, 0.0, 3.0, 0.0], [[0.1, 1.0, 0.5], [2.0, 2.1, -0.3]],
                                     covariance=cov, reference=[0.1, 0.2, 0.0])
    back = tracks_from_frame(tracks_to_frame(tracks))
    for a, b in zip(tracks, back):
        assert np.allclose(a.parameters, b.parameters)
        assert np.allclose(a.covariance, b.covariance)
        assert np.allclose(a.reference, b.reference)


def test_five_parameter_rows_without_covariance():
    df = pd.DataFrame({"d0": [0.1], "z0": [1.0], "phi": [0.2], "theta": [1.0], "qop": [0.5]})
    (trk,) = tracks_from_frame(df)
    assert trk.time == 0.0
    assert trk.covariance is None


def test_missing_parameter_column():
    with pytest.raises(KeyError):
        tracks_from_frame(pd.DataFrame({"d0": [0.0], "z0": [1.0]}))


def test_proto_vertices_grouped_by_id():
    df = pd.DataFrame({"vertex_id": [3, 1, 3, 1, np.nan, 2]})
    assert proto_vertices_from_frame(df) == [[1, 3], [5], [0, 2]]
    assert proto_vertices_from_frame(pd.DataFrame({"d0": [0, 0, 0]})) == [[0, 1, 2]]


def test_load_tracks_and_write_vertices(tmp_path):
    tracks = make_tracks_from_vertex([0.0, 0.0, 1.0, 0.0], [[0.1, 1.0, 0.5], [2.0, 2.1, -0.3]])
    df = tracks_to_frame(tracks)
    df["vertex_id"] = [7, 7]
    path = tmp_path / "tracks.csv"
    df.to_csv(path, index=False)
    loaded, protos = load_tracks(path)
    assert len(loaded) == 2
    assert protos == [[0, 1]]

    out = tmp_path / "vertices.csv"
    write_vertices([Vertex(position=np.array([0.0, 0.0, 1.0, 0.0]), covariance=np.eye(4))], out)
    written = pd.read_csv(out)
    assert list(written["z"]) == [1.0]
    assert list(written["sigma_x"]) == [1.0]


def test_load_config_merges_blocks(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"fitter_config": {"max_iterations": 8}, "unknown": {}}')
    cfg = load_config(path)
    assert cfg["fitter_config"]["max_iterations"] == 8
    assert cfg["fitter_config"]["update_tolerance"] is None
    assert cfg["density_config"]["z0_significance_cut"] == 144.0
    assert "unknown" not in cfg

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError):
        load_config(bad)


def test_cli_simulation_writes_vertices(tmp_path):
    out = tmp_path / "vertices.csv"
    main(["--simulate", "3", "--tracks-per-vertex", "6", "--seed", "5", "--out", str(out)])
    written = pd.read_csv(out)
    assert list(written.columns[:4]) == ["x", "y", "z", "t"]
    assert len(written) <= 3
