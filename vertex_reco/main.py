#!/usr/bin/env python3
r"""
Vertex fitting runner (headless-safe, JSON-configurable).

Reads reconstructed track parameters (or simulates vertices), seeds each
proto vertex with the Gaussian track density, fits it with the full Billoir
vertex fitter and writes one row per fitted vertex.

Input format
------------
A CSV with columns ``d0, z0, phi, theta, qop[, t]``, upper-triangle covariance
columns ``cov_<a>_<b>`` (see :func:`vertex_reco.data.covariance_columns`),
optional ``ref_x, ref_y, ref_z`` and a ``vertex_id`` column grouping tracks
into proto vertices.

CLI overview
------------
.. code-block:: bash

   vertex-reco -f tracks.csv --config config.json --out vertices.csv
   vertex-reco --simulate 20 --tracks-per-vertex 8 --constrained --plot -v
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Mapping, MutableMapping, Optional, Sequence, Tuple

import numpy as np
import orjson

from vertex_reco.algorithm import VertexFitterAlgorithm
from vertex_reco.billoir_fitter import FullBilloirVertexFitter
from vertex_reco.density_vertex_finder import TrackDensityVertexFinder
from vertex_reco.field import ConstantMagneticField
from vertex_reco.linearizer import NumericalTrackLinearizer
from vertex_reco.profiling import prof
from vertex_reco.simulation import make_tracks_from_vertex, random_momenta
from vertex_reco.track_density import GaussianTrackDensity
from vertex_reco.track_parameters import BoundTrackParameters
import vertex_reco.data as vtx_data


DEFAULT_CONFIG: Mapping[str, dict] = {
    "field": {"bz": 2.0},
    "density_config": {"d0_significance_cut": 12.25, "z0_significance_cut": 144.0,
                       "is_gaussian_shaped": True},
    "fitter_config": {"max_iterations": 5, "update_tolerance": None},
    "algorithm_config": {
        "constraint_position": [0.0, 0.0, 0.0, 0.0],
        "constraint_covariance": [0.01, 0.01, 2500.0, 1.0e4],
    },
}


def build_parser() -> argparse.ArgumentParser:
    """Command-line interface of the vertex fitting runner."""
    p = argparse.ArgumentParser(description="Fit vertices to reconstructed tracks.")
    p.add_argument("-f", "--file", type=str, default=None,
                   help="Input track CSV (see module docstring). Required unless --simulate.")
    p.add_argument("--simulate", type=int, default=0, metavar="N",
                   help="Simulate N vertices instead of reading --file.")
    p.add_argument("--tracks-per-vertex", type=int, default=10,
                   help="Tracks per simulated vertex (default: 10).")
    p.add_argument("--seed", type=int, default=None,
                   help="Random seed for the simulation.")
    p.add_argument("--config", type=str, default=None,
                   help="JSON config with field/density/fitter/algorithm blocks.")
    p.add_argument("--constrained", action="store_true", default=False,
                   help="Fit with the beam-spot constraint from the config.")
    p.add_argument("-o", "--out", type=str, default=None,
                   help="Write fitted vertices to this CSV.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show the density of the first proto vertex and the fitted vertices.")
    p.add_argument("--plot-out", type=str, default=None,
                   help="Save the vertex plot to this path.")
    p.add_argument("--profile", action="store_true", default=False,
                   help="Enable cProfile around the fitting phase.")
    p.add_argument("--profile-out", type=str, default=None,
                   help="If set, write pstats text to this file.")
    p.add_argument("-v", "--verbose", action="store_true",
                   help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    """Process-wide logging: ``DEBUG`` when verbose, ``INFO`` otherwise."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )
    # numba's compiler logs are noise at DEBUG
    logging.getLogger("numba").setLevel(logging.WARNING)


def apply_plotting_guard(enable_plots: bool) -> None:
    """Force the non-interactive ``Agg`` backend when plots are not shown."""
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)


def load_config(config_path: Optional[Path]) -> MutableMapping[str, dict]:
    r"""
    Read a JSON config and merge it over :data:`DEFAULT_CONFIG` block by block.

    Raises
    ------
    ValueError
        If the file cannot be parsed.
    """
    cfg = {k: dict(v) for k, v in DEFAULT_CONFIG.items()}
    if config_path is None:
        return cfg
    try:
        user = orjson.loads(config_path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e
    for key, block in user.items():
        if key in cfg and isinstance(block, dict):
            cfg[key].update(block)
        else:
            logging.debug("Ignoring unknown config block %r", key)
    return cfg


def _constraint_from_config(block: Mapping) -> Tuple[np.ndarray, np.ndarray]:
    pos = np.asarray(block["constraint_position"], dtype=np.float64)
    cov = np.asarray(block["constraint_covariance"], dtype=np.float64)
    if cov.ndim == 1:
        cov = np.diag(cov)
    return pos, cov


def build_algorithm(cfg: Mapping[str, dict], constrained: bool) -> VertexFitterAlgorithm:
    """Assemble field, linearizer, density seeder, fitter and batch algorithm."""
    field = ConstantMagneticField(bz=float(cfg["field"]["bz"]))
    linearizer = NumericalTrackLinearizer(field)
    density = GaussianTrackDensity(**cfg["density_config"])
    fitter = FullBilloirVertexFitter(**cfg["fitter_config"])
    pos, cov = _constraint_from_config(cfg["algorithm_config"])
    return VertexFitterAlgorithm(
        fitter,
        linearizer,
        constrained=constrained,
        constraint_position=pos,
        constraint_covariance=cov,
        seeder=TrackDensityVertexFinder(density),
    )


def simulate_event(n_vertices: int,
                   tracks_per_vertex: int,
                   bz: float,
                   rng: np.random.Generator) -> Tuple[List[BoundTrackParameters], List[List[int]], np.ndarray]:
    """Smeared tracks from ``n_vertices`` random vertices along the beam line."""
    truth = np.column_stack([
        rng.normal(0.0, 0.01, n_vertices),
        rng.normal(0.0, 0.01, n_vertices),
        rng.normal(0.0, 50.0, n_vertices),
        rng.normal(0.0, 0.2, n_vertices),
    ])
    tracks: List[BoundTrackParameters] = []
    protos: List[List[int]] = []
    for vtx in truth:
        mom = random_momenta(tracks_per_vertex, rng)
        start = len(tracks)
        tracks.extend(make_tracks_from_vertex(vtx, mom, bz=bz, rng=rng))
        protos.append(list(range(start, len(tracks))))
    return tracks, protos, truth


def main(argv: Optional[Sequence[str]] = None) -> None:
    r"""
    End-to-end pipeline: **load or simulate → seed → fit → report**.

    Failed fits are logged by :class:`~vertex_reco.algorithm.VertexFitterAlgorithm`
    and do not stop the run.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)

    cfg = load_config(Path(args.config) if args.config else None)
    truth = None
    if args.simulate > 0:
        rng = np.random.default_rng(args.seed)
        tracks, protos, truth = simulate_event(args.simulate, args.tracks_per_vertex,
                                               float(cfg["field"]["bz"]), rng)
        logging.info("Simulated %d vertices with %d tracks", len(protos), len(tracks))
    elif args.file:
        tracks, protos = vtx_data.load_tracks(args.file)
    else:
        raise SystemExit("either --file or --simulate is required")

    algorithm = build_algorithm(cfg, args.constrained)
    with prof(args.profile, out_path=args.profile_out):
        vertices = algorithm.execute(tracks, protos)

    for i, v in enumerate(vertices):
        logging.info("Vertex %d: pos=(%.4f, %.4f, %.4f, %.4f) chi2/ndf=%.3f/%.0f tracks=%d",
                     i, *v.position, v.chi2, v.ndf, v.n_tracks)
    if truth is not None and len(vertices) == len(truth):
        dz = np.array([v.position[2] for v in vertices]) - truth[:, 2]
        logging.info("z residual: mean=%.4g mm, rms=%.4g mm", dz.mean(), np.sqrt(np.mean(dz ** 2)))

    if args.out:
        vtx_data.write_vertices(vertices, args.out)

    if args.plot or args.plot_out:
        import vertex_reco.plotting as vtx_plot
        if protos:
            vtx_plot.plot_track_density([tracks[i] for i in protos[0]], algorithm.seeder.density,
                                        do_show=args.plot)
        vtx_plot.plot_vertices(vertices, truth, do_show=args.plot, save_path=args.plot_out)


if __name__ == "__main__":
    main()
