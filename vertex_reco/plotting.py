import logging
from typing import Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt

from vertex_reco.track_density import DensityState, GaussianTrackDensity, _density_and_derivatives
from vertex_reco.vertex import Vertex


def _show_and_close(fig, *, do_show: bool = True, save_path: Optional[str] = None) -> None:
    r"""
    Optionally save and show a figure, then always close it.

    Safe in headless mode where ``plt.show()`` has been patched to a no-op.
    """
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=120)
        logging.info("Saved figure to %s", save_path)
    if do_show:
        plt.show()
    plt.close(fig)


def plot_track_density(tracks: Sequence,
                       density: Optional[GaussianTrackDensity] = None,
                       *,
                       n_points: int = 2000,
                       do_show: bool = True,
                       save_path: Optional[str] = None):
    r"""
    Plot the summed track density :math:`\rho(z)` with its global maximum.

    The z range spans the union of the accepted tracks' valid intervals. The
    maximum found by
    :meth:`~vertex_reco.track_density.GaussianTrackDensity.global_maximum_with_width`
    is drawn as a vertical line with a :math:`\pm w` band.

    Returns
    -------
    matplotlib.figure.Figure or None
        ``None`` when no track contributes to the density.
    """
    density = density or GaussianTrackDensity()
    state = DensityState()
    z_max, width = density.global_maximum_with_width(tracks, state)
    if not state.track_entries:
        logging.warning("No track contributes to the density; nothing to plot.")
        return None

    c0, c1, c2, lower, upper = state.as_arrays()
    grid = np.linspace(lower.min(), upper.max(), int(n_points))
    rho = np.array([_density_and_derivatives(z, c0, c1, c2, lower, upper)[0] for z in grid])

    fig, ax = plt.subplots(figsize=(8, 4))
    ax.plot(grid, rho, lw=1.2, color="tab:blue", label=r"$\rho(z)$")
    ax.plot([e.z for e in state.track_entries], np.zeros(len(state.track_entries)),
            "|", color="k", ms=12, label=r"track $z_0$")
    if width > 0.0:
        ax.axvline(z_max, color="tab:red", lw=1.0, label=f"max z={z_max:.3f}")
        ax.axvspan(z_max - width, z_max + width, color="tab:red", alpha=0.15)
    ax.set_xlabel("z [mm]")
    ax.set_ylabel("track density")
    ax.legend(loc="upper right")
    _show_and_close(fig, do_show=do_show, save_path=save_path)
    return fig


def plot_vertices(vertices: Sequence[Vertex],
                  truth: Optional[np.ndarray] = None,
                  *,
                  do_show: bool = True,
                  save_path: Optional[str] = None):
    """Fitted vertices in (z, x) and (z, y) with 1-sigma error bars; truth as crosses."""
    if not vertices:
        logging.warning("No vertices to plot.")
        return None
    pos = np.array([v.position for v in vertices])
    err = np.sqrt(np.clip(np.array([np.diag(v.covariance) for v in vertices]), 0.0, None))

    fig, axes = plt.subplots(1, 2, figsize=(10, 4), sharex=True)
    for ax, k, label in zip(axes, (0, 1), ("x [mm]", "y [mm]")):
        ax.errorbar(pos[:, 2], pos[:, k], xerr=err[:, 2], yerr=err[:, k],
                    fmt="o", ms=3, capsize=2, label="fitted")
        if truth is not None:
            t = np.atleast_2d(truth)
            ax.plot(t[:, 2], t[:, k], "x", color="tab:red", label="truth")
        ax.set_xlabel("z [mm]")
        ax.set_ylabel(label)
        ax.legend(loc="best")
    _show_and_close(fig, do_show=do_show, save_path=save_path)
    return fig
