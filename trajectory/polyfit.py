"""
Polynomial fitting for the local-frame reference path.

Least squares through a Vandermonde design matrix solved with a QR
decomposition; coefficient k multiplies x**k.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


RANK_TOLERANCE = 1e-9


class PolyFitError(ValueError):
    """Raised when a polynomial cannot be fit through the given points."""


def vandermonde(xs: np.ndarray, order: int) -> np.ndarray:
    """Design matrix with rows [1, x, x^2, ..., x^order]."""
    xs = np.asarray(xs, dtype=float)
    design = np.ones((xs.size, order + 1))
    for j in range(order):
        design[:, j + 1] = design[:, j] * xs
    return design


def polyfit(xs: Sequence[float], ys: Sequence[float], order: int) -> np.ndarray:
    """
    Fit a polynomial of the given order through (xs, ys).

    Args:
        xs: Sample x values
        ys: Sample y values (same length as xs)
        order: Polynomial degree, 1 <= order <= len(xs) - 1

    Returns:
        Array of order + 1 coefficients, lowest power first

    Raises:
        PolyFitError: On mismatched lengths, too few points, non-finite values
            or a degenerate x spread
    """
    xs = np.asarray(xs, dtype=float).ravel()
    ys = np.asarray(ys, dtype=float).ravel()
    if xs.size != ys.size:
        raise PolyFitError(f"x/y length mismatch: {xs.size} != {ys.size}")
    if order < 1:
        raise PolyFitError(f"order must be >= 1, got {order}")
    if xs.size < order + 1:
        raise PolyFitError(f"order {order} needs {order + 1} points, got {xs.size}")
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise PolyFitError("non-finite sample values")

    design = vandermonde(xs, order)
    q, r = np.linalg.qr(design)
    diag = np.abs(np.diag(r))
    # Scale-aware rank check on R; identical x values collapse the columns
    if diag.size == 0 or np.min(diag) <= RANK_TOLERANCE * max(1.0, float(np.max(diag))):
        raise PolyFitError("degenerate points: design matrix is rank deficient")

    coeffs = np.linalg.solve(r, q.T @ ys)
    if not np.all(np.isfinite(coeffs)):
        raise PolyFitError("fit produced non-finite coefficients")
    return coeffs


def polyeval(coeffs: Sequence[float], x):
    """Evaluate a polynomial (lowest power first) at x using Horner's scheme."""
    result = np.zeros_like(np.asarray(x, dtype=float))
    for c in reversed(list(coeffs)):
        result = result * x + c
    if np.ndim(result) == 0:
        return float(result)
    return result


def polyderiv(coeffs: Sequence[float]) -> np.ndarray:
    """Coefficients of the first derivative (lowest power first)."""
    coeffs = np.asarray(coeffs, dtype=float)
    if coeffs.size <= 1:
        return np.zeros(1)
    return coeffs[1:] * np.arange(1, coeffs.size)
