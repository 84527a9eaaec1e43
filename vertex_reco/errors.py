from __future__ import annotations


__all__ = [
    "VertexingError",
    "NoCovarianceError",
    "SingularMatrixError",
    "LinearizationError",
    "NumericFailureError",
]


class VertexingError(RuntimeError):
    r"""
    Base class for every failure raised by seeding, linearization and fitting.

    Each subclass carries a stable ``code`` string so that batch drivers can
    log and count failures without matching on message text.

    Notes
    -----
    Degenerate-but-valid outcomes (no density maximum, every track removed by
    the significance cuts) are **not** errors; they are reported through the
    ``(0.0, 0.0)`` sentinel of
    :meth:`vertex_reco.track_density.GaussianTrackDensity.global_maximum_with_width`.
    """
    code = "vertexing_error"


class NoCovarianceError(VertexingError):
    """A track without a covariance matrix was given where one is required."""
    code = "no_covariance"


class SingularMatrixError(VertexingError):
    """A normal-equation matrix could not be factorized (not SPD)."""
    code = "singular_matrix"


class LinearizationError(VertexingError):
    """The track linearizer could not produce a local linear model."""
    code = "linearization_failure"


class NumericFailureError(VertexingError):
    """The fit produced a non-finite chi-square."""
    code = "numeric_failure"
