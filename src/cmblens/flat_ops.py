"""
Fourier-diagonal special operators on a FlatGrid.

Gradients are `i ell` multipliers with the Nyquist modes zeroed, so that the
discrete derivative stays real and anti-self-adjoint. Band-pass filters are
radial windows W(ell) with cosine tapers of width delta_ell.
"""

from __future__ import annotations

import numpy as np

from .field import FOURIER, FlatField, FlatGrid
from .operators import DiagOp


def nyquist_mask(grid: FlatGrid) -> tuple[np.ndarray, np.ndarray]:
    """Boolean (fourier_shape) masks, False on the x / y Nyquist modes."""
    nx, ny = grid.map_shape
    keep_x = np.ones(grid.fourier_shape, dtype=bool)
    keep_y = np.ones(grid.fourier_shape, dtype=bool)
    if nx % 2 == 0:
        keep_x[nx // 2, :] = False
    if ny % 2 == 0:
        keep_y[:, -1] = False
    return keep_x, keep_y


def gradient_ops(grid: FlatGrid) -> tuple[DiagOp, DiagOp]:
    """(d/dx, d/dy) as Fourier DiagOps."""
    LX, LY = grid.ell_xy()
    keep_x, keep_y = nyquist_mask(grid)
    dx = FlatField(np.where(keep_x, 1j * LX, 0.0), grid, FOURIER)
    dy = FlatField(np.where(keep_y, 1j * LY, 0.0), grid, FOURIER)
    return DiagOp(dx), DiagOp(dy)


def laplacian_op(grid: FlatGrid) -> DiagOp:
    ell = grid.ell()
    return DiagOp(FlatField(-(ell * ell), grid, FOURIER))


def window_op(grid: FlatGrid, W_per_mode: np.ndarray) -> DiagOp:
    W = np.asarray(W_per_mode, dtype=np.float64)
    if W.shape != grid.fourier_shape:
        raise ValueError(f"W_per_mode must have shape {grid.fourier_shape}, got {W.shape}.")
    return DiagOp(FlatField(W, grid, FOURIER))


def bandpass_op(grid: FlatGrid, ell: np.ndarray, W: np.ndarray) -> DiagOp:
    """
    Radial filter from a tabulated window.

    W is linearly interpolated at each mode's |ell|; modes beyond the table
    get 0.
    """
    ell = np.asarray(ell, dtype=np.float64)
    W = np.asarray(W, dtype=np.float64)
    if ell.ndim != 1 or ell.shape != W.shape:
        raise ValueError("ell and W must be 1D arrays of equal length.")
    return window_op(grid, np.interp(grid.ell(), ell, W, left=0.0, right=0.0))


def _rise(n: int) -> np.ndarray:
    return (np.cos(np.linspace(np.pi, 0.0, n)) + 1.0) / 2.0


def highpass(grid: FlatGrid, ell: int, delta_ell: int = 50, ell_max: int = 10000) -> DiagOp:
    """Zero below ell - delta_ell, one above ell + delta_ell."""
    ell, delta_ell = int(ell), int(delta_ell)
    if ell - delta_ell < 0 or ell + delta_ell > ell_max:
        raise ValueError("highpass needs delta_ell <= ell <= ell_max - delta_ell.")
    W = np.concatenate([np.zeros(ell - delta_ell), _rise(2 * delta_ell), np.ones(ell_max + 1 - ell - delta_ell)])
    return bandpass_op(grid, np.arange(ell_max + 1), W)


def lowpass(grid: FlatGrid, ell: int, delta_ell: int = 50) -> DiagOp:
    """One below ell - delta_ell, zero above ell + delta_ell."""
    ell, delta_ell = int(ell), int(delta_ell)
    if ell - delta_ell < 0:
        raise ValueError("lowpass needs delta_ell <= ell.")
    W = np.concatenate([np.ones(ell - delta_ell), _rise(2 * delta_ell)[::-1]])
    return bandpass_op(grid, np.arange(ell + delta_ell), W)


def midpass(grid: FlatGrid, ell_min: int, ell_max: int, delta_ell: int = 50) -> DiagOp:
    ell_min, ell_max, delta_ell = int(ell_min), int(ell_max), int(delta_ell)
    if ell_min - delta_ell < 0 or ell_max - ell_min < 2 * delta_ell:
        raise ValueError("midpass needs delta_ell <= ell_min and ell_max - ell_min >= 2*delta_ell.")
    W = np.concatenate(
        [
            np.zeros(ell_min - delta_ell),
            _rise(2 * delta_ell),
            np.ones(ell_max - ell_min - 2 * delta_ell),
            _rise(2 * delta_ell)[::-1],
        ]
    )
    return bandpass_op(grid, np.arange(ell_max + delta_ell), W)
