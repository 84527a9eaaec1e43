from __future__ import annotations

from typing import Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from vertex_reco.errors import SingularMatrixError


__all__ = [
    "spd_factor",
    "spd_solve",
    "spd_inverse",
    "chi2_quadratic",
    "symmetrize",
]


def symmetrize(M: np.ndarray) -> np.ndarray:
    r"""
    Return :math:`\tfrac12(M + M^\top)`.

    Normal-equation sums are symmetric by construction; this removes the
    round-off asymmetry left by the chained products before factorization.
    """
    M = np.asarray(M, dtype=np.float64)
    return 0.5 * (M + M.T)


def spd_factor(M: np.ndarray, *, what: str = "matrix") -> Tuple[np.ndarray, bool]:
    r"""
    Cholesky-factor a symmetric positive-definite matrix.

    Parameters
    ----------
    M : ndarray, shape (n, n)
        Symmetric matrix, expected SPD.
    what : str, optional
        Name used in the error message (e.g. ``"reduced vertex matrix"``).

    Returns
    -------
    factor : tuple(ndarray, bool)
        Opaque factor as returned by :func:`scipy.linalg.cho_factor`, to be
        passed to :func:`spd_solve`.

    Raises
    ------
    SingularMatrixError
        If ``M`` contains non-finite entries or is not positive definite.

    Notes
    -----
    Unlike a jittered factorization, a failure here is reported rather than
    repaired: a singular normal-equation matrix means the unknowns are not
    determined by the data and the fit must not silently continue.
    """
    M = symmetrize(M)
    if not np.all(np.isfinite(M)):
        raise SingularMatrixError(f"{what} has non-finite entries")
    try:
        return cho_factor(M, lower=True, check_finite=False)
    except LinAlgError as e:
        raise SingularMatrixError(f"{what} is not positive definite: {e}") from e


def spd_solve(factor: Tuple[np.ndarray, bool], b: np.ndarray) -> np.ndarray:
    r"""
    Solve :math:`M x = b` from a factor produced by :func:`spd_factor`.

    ``b`` may be a vector or a matrix of right-hand sides; two triangular
    solves are used, no explicit inverse is formed.
    """
    return cho_solve(factor, np.asarray(b, dtype=np.float64), check_finite=False)


def spd_inverse(M: np.ndarray, *, what: str = "matrix") -> np.ndarray:
    r"""
    Invert a symmetric positive-definite matrix through its Cholesky factor.

    Parameters
    ----------
    M : ndarray, shape (n, n)
        SPD matrix.
    what : str, optional
        Name used in the error message.

    Returns
    -------
    ndarray, shape (n, n)
        :math:`M^{-1}`, symmetrized.

    Raises
    ------
    SingularMatrixError
        If ``M`` is not SPD.
    """
    M = np.asarray(M, dtype=np.float64)
    factor = spd_factor(M, what=what)
    return symmetrize(spd_solve(factor, np.eye(M.shape[0], dtype=np.float64)))


def chi2_quadratic(r: np.ndarray, W: np.ndarray) -> float:
    r"""
    Weighted squared residual :math:`\chi^2 = r^\top W r`.

    Parameters
    ----------
    r : ndarray, shape (n,)
        Residual vector.
    W : ndarray, shape (n, n)
        Weight (inverse covariance).

    Returns
    -------
    float
    """
    r = np.asarray(r, dtype=np.float64)
    return float(r @ np.asarray(W, dtype=np.float64) @ r)
