"""
Angular power spectra and their Fourier-diagonal covariance operators.

Conventions: for a FlatGrid with square pixels of side dx and orthonormal
rfft2, a stationary field with spectrum C_ell has Fourier-mode variance

    lambda(ell) = C_ell / (dx * dx)

which is what `cl_to_diag_op` stores on the diagonal.
"""

from __future__ import annotations

import numpy as np

from .field import FOURIER, FlatField, FlatGrid
from .operators import DiagOp


def power_law_cl(
    ell,
    amplitude: float,
    index: float,
    *,
    ell_pivot: float = 1000.0,
    ell_min: float = 2.0,
) -> np.ndarray:
    """
    C_ell = amplitude * (ell / ell_pivot) ** index for ell >= ell_min, else 0.

    Zeroed low multipoles (and the monopole) become null modes of the
    covariance, handled as such by DiagOp.pinv / logdet.
    """
    ell = np.asarray(ell, dtype=np.float64)
    with np.errstate(divide="ignore"):
        cl = float(amplitude) * (np.maximum(ell, 1e-30) / float(ell_pivot)) ** float(index)
    return np.where(ell >= float(ell_min), cl, 0.0)


def camb_cls(ell, *, lmax: int = 5000) -> dict[str, np.ndarray]:
    """
    Fiducial unlensed TT and lensing-potential spectra from CAMB.

    Returns:
      {"TT": C_ell [muK^2], "phiphi": C_ell^{phi phi}} interpolated at `ell`.
    """
    try:
        import camb  # type: ignore
    except ModuleNotFoundError as e:
        raise ModuleNotFoundError(
            "camb is required for camb_cls(). "
            "Either install the `camb` extra, or build spectra with power_law_cl()."
        ) from e

    cosmology = camb.CAMBparams()
    cosmology.set_cosmology(H0=67.5, ombh2=0.022, omch2=0.122, mnu=0.06, omk=0, tau=0.054)
    cosmology.InitPower.set_params(As=2.1e-9, ns=0.965, r=0)
    cosmology.set_for_lmax(int(lmax), lens_potential_accuracy=1)

    results = camb.get_results(cosmology)
    powers = results.get_cmb_power_spectra(cosmology, CMB_unit="muK", raw_cl=True)
    cl_tt = powers["unlensed_scalar"][:, 0]
    ell_camb = np.arange(cl_tt.shape[0])

    # lens_potential holds [L(L+1)]^2 C_L^{phi phi} / 2pi
    clpp_scaled = powers["lens_potential"][:, 0]
    L = np.arange(clpp_scaled.shape[0], dtype=np.float64)
    factor = (L * (L + 1.0)) ** 2 / (2.0 * np.pi)
    factor = np.where(factor > 0, factor, np.inf)
    cl_pp = clpp_scaled / factor

    ell = np.asarray(ell, dtype=np.float64)
    return {
        "TT": np.interp(ell, ell_camb, cl_tt, right=0.0),
        "phiphi": np.interp(ell, L, cl_pp, right=0.0),
    }


def cl_per_mode(grid: FlatGrid, ell: np.ndarray, cl: np.ndarray) -> np.ndarray:
    """Interpolate a tabulated C_ell onto every rfft2 mode of the grid."""
    ell = np.asarray(ell, dtype=np.float64)
    cl = np.asarray(cl, dtype=np.float64)
    if ell.ndim != 1 or ell.shape != cl.shape:
        raise ValueError("ell and cl must be 1D arrays of equal length.")
    cl = np.where(np.isfinite(cl), cl, 0.0)
    return np.interp(grid.ell(), ell, cl, right=0.0)


def cl_to_diag_op(grid: FlatGrid, ell: np.ndarray, cl: np.ndarray) -> DiagOp:
    """Covariance operator of a stationary field with spectrum C_ell."""
    dxdy = float(grid.pixel_res_rad) * float(grid.pixel_res_rad)
    return DiagOp(FlatField(cl_per_mode(grid, ell, cl) / dxdy, grid, FOURIER))


def white_noise_op(grid: FlatGrid, noise_uK_arcmin: float) -> DiagOp:
    """Pixel white-noise covariance for a map depth in muK-arcmin."""
    sigma_pix = float(noise_uK_arcmin) * (np.pi / 180.0 / 60.0) / float(grid.pixel_res_rad)
    var = np.full(grid.map_shape, sigma_pix * sigma_pix, dtype=np.float64)
    return DiagOp(FlatField(var, grid))


def radial_cl(f: FlatField, n_ell_bins: int = 32) -> tuple[np.ndarray, np.ndarray]:
    """
    Radially binned pseudo-C_ell of a field.

    Inverse of cl_to_diag_op's normalization: |f_ell|^2 * dx*dy, averaged in
    annuli. Empty bins are NaN.

    Returns:
      ell_centers: (n_ell_bins,) float64
      cl: (n_ell_bins,) float64
    """
    grid = f.grid
    ps = (np.abs(f.to_fourier().data) ** 2) * float(grid.pixel_res_rad) ** 2
    ell = grid.ell().reshape(-1)
    w = grid.mode_weights().reshape(-1)
    ps = ps.reshape(-1)

    edges = np.linspace(0.0, float(np.max(ell)), int(n_ell_bins) + 1)
    idx = np.digitize(ell, edges) - 1
    m = (idx >= 0) & (idx < int(n_ell_bins))
    cl = np.zeros((int(n_ell_bins),), dtype=np.float64)
    counts = np.zeros((int(n_ell_bins),), dtype=np.float64)
    np.add.at(cl, idx[m], (w * ps)[m])
    np.add.at(counts, idx[m], w[m])
    with np.errstate(invalid="ignore", divide="ignore"):
        cl = np.where(counts > 0, cl / counts, np.nan)
    ell_centers = 0.5 * (edges[:-1] + edges[1:])
    return ell_centers, cl
