from __future__ import annotations

import logging
from itertools import combinations_with_replacement
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from vertex_reco.track_parameters import PARAMETER_NAMES, BoundTrackParameters
from vertex_reco.vertex import Vertex


__all__ = [
    "covariance_columns",
    "tracks_from_frame",
    "tracks_to_frame",
    "proto_vertices_from_frame",
    "load_tracks",
    "vertices_to_frame",
    "write_vertices",
]

logger = logging.getLogger(__name__)

_REF_COLS = ("ref_x", "ref_y", "ref_z")


def covariance_columns(names: Sequence[str] = PARAMETER_NAMES) -> List[str]:
    """Upper-triangle covariance column names ``cov_<a>_<b>``."""
    return [f"cov_{a}_{b}" for a, b in combinations_with_replacement(names, 2)]


def tracks_from_frame(df: pd.DataFrame) -> List[BoundTrackParameters]:
    r"""
    Build :class:`BoundTrackParameters` from a table.

    Required columns are ``d0, z0, phi, theta, qop``; ``t`` is optional (a
    missing time column yields 5-parameter tracks). The covariance is read from
    the upper-triangle columns ``cov_<a>_<b>`` (see :func:`covariance_columns`);
    a row whose covariance cells are all missing carries no covariance. The
    optional ``ref_x, ref_y, ref_z`` columns give the perigee reference.

    Raises
    ------
    KeyError
        If a required parameter column is missing.
    """
    names = list(PARAMETER_NAMES if "t" in df.columns else PARAMETER_NAMES[:5])
    try:
        values = df[names].to_numpy(dtype=np.float64)
    except KeyError as e:
        raise KeyError(f"Missing required track parameter column: {e.args[0]}") from e

    n = len(names)
    pairs = list(combinations_with_replacement(range(n), 2))
    cov_cols = covariance_columns(names)
    present = [c for c in cov_cols if c in df.columns]
    cov_cells = (df.reindex(columns=cov_cols).to_numpy(dtype=np.float64)
                 if present else np.full((len(df), len(cov_cols)), np.nan))
    refs = (df[list(_REF_COLS)].to_numpy(dtype=np.float64)
            if all(c in df.columns for c in _REF_COLS) else np.zeros((len(df), 3)))

    tracks: List[BoundTrackParameters] = []
    for row in range(len(df)):
        cells = cov_cells[row]
        cov = None
        if not np.all(np.isnan(cells)):
            cov = np.zeros((n, n))
            for (a, b), v in zip(pairs, np.nan_to_num(cells)):
                cov[a, b] = cov[b, a] = v
        tracks.append(BoundTrackParameters(values[row], cov, refs[row]))
    return tracks


def tracks_to_frame(tracks: Sequence[BoundTrackParameters]) -> pd.DataFrame:
    """Inverse of :func:`tracks_from_frame` (always six parameters)."""
    pairs = list(combinations_with_replacement(range(6), 2))
    rows = []
    for trk in tracks:
        row = dict(zip(PARAMETER_NAMES, (float(v) for v in trk.parameters)))
        row.update(zip(_REF_COLS, (float(v) for v in trk.reference)))
        if trk.has_covariance:
            row.update({c: float(trk.covariance[a, b])
                        for c, (a, b) in zip(covariance_columns(), pairs)})
        rows.append(row)
    return pd.DataFrame(rows, columns=list(PARAMETER_NAMES) + list(_REF_COLS) + covariance_columns())


def proto_vertices_from_frame(df: pd.DataFrame, column: str = "vertex_id") -> List[List[int]]:
    r"""
    Group row indices by ``column`` into proto vertices.

    Without the column, all tracks form a single proto vertex. Groups are
    ordered by their key; rows with a missing key are ignored.
    """
    if column not in df.columns:
        return [list(range(len(df)))]
    keys = df[column].reset_index(drop=True)
    groups = keys.dropna().groupby(keys.dropna(), sort=True).groups
    return [sorted(int(i) for i in idx) for idx in groups.values()]


def load_tracks(path: Union[str, Path]) -> Tuple[List[BoundTrackParameters], List[List[int]]]:
    """Read a track CSV; returns the tracks and their proto vertices."""
    df = pd.read_csv(path)
    tracks = tracks_from_frame(df)
    protos = proto_vertices_from_frame(df)
    logger.info("Loaded %d tracks in %d proto vertices from %s", len(tracks), len(protos), path)
    return tracks, protos


def vertices_to_frame(vertices: Sequence[Vertex]) -> pd.DataFrame:
    """One row per vertex: position, uncertainties, chi2, ndf and track count."""
    cols = ["x", "y", "z", "t", "sigma_x", "sigma_y", "sigma_z", "sigma_t", "chi2", "ndf", "n_tracks"]
    return pd.DataFrame([v.to_dict() for v in vertices], columns=cols)


def write_vertices(vertices: Sequence[Vertex], path: Union[str, Path]) -> None:
    vertices_to_frame(vertices).to_csv(path, index=False)
    logger.info("Wrote %d vertices to %s", len(vertices), path)
