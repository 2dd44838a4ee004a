"""
Inverse-transform sampling of a 1D log density evaluated on a grid.

The log density is evaluated at the grid nodes, smoothed with a spline,
normalized by quadrature, and inverted with a bracketed root finder.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Callable, NamedTuple, Optional

import numpy as np
from scipy.integrate import quad
from scipy.interpolate import UnivariateSpline
from scipy.optimize import brentq
from tqdm import tqdm

QUAD_LIMIT = 200
# cubic spline needs k + 1 nodes
MIN_NODES = 4


def check_grid(xs) -> np.ndarray:
    """Validate a 1D grid of strictly increasing nodes and return it as float64."""
    xs = np.asarray(xs, dtype=np.float64)
    if xs.ndim != 1 or xs.size < MIN_NODES:
        raise ValueError(f"grid must be a 1D array with at least {MIN_NODES} nodes.")
    if np.any(np.diff(xs) <= 0):
        raise ValueError("grid nodes must be strictly increasing.")
    return xs


class InterpolatedLogPDF:
    """
    Normalized, smoothed log density on [lo, hi].

    Callable on scalars or arrays; -inf outside the support. `cdf` and `ppf`
    are exact for the smoothed density up to quadrature tolerance.
    """

    def __init__(self, xs: np.ndarray, lnPs: np.ndarray, *, smoothing: float = 0.0, rtol: float = 1e-5):
        self.xs = np.asarray(xs, dtype=np.float64)
        self.lo = float(self.xs[0])
        self.hi = float(self.xs[-1])
        self.rtol = float(rtol)
        self._spline = UnivariateSpline(self.xs, np.asarray(lnPs, dtype=np.float64), s=float(smoothing))

        # cumulative probability at each node
        cells = [self._integrate(a, b) for a, b in zip(self.xs[:-1], self.xs[1:])]
        self._cum = np.concatenate([[0.0], np.cumsum(cells)])

    def __call__(self, x):
        x = np.asarray(x, dtype=np.float64)
        out = np.where((x >= self.lo) & (x <= self.hi), self._spline(x), -np.inf)
        return float(out) if out.ndim == 0 else out

    def pdf(self, x):
        return np.exp(self(x))

    def _integrate(self, a: float, b: float) -> float:
        val, _ = quad(lambda t: float(np.exp(self._spline(t))), a, b, epsrel=self.rtol, limit=QUAD_LIMIT)
        return float(val)

    @property
    def total(self) -> float:
        return float(self._cum[-1])

    def cdf(self, x: float) -> float:
        x = float(x)
        if x <= self.lo:
            return 0.0
        if x >= self.hi:
            return 1.0
        j = int(np.searchsorted(self.xs, x, side="right")) - 1
        return (float(self._cum[j]) + self._integrate(float(self.xs[j]), x)) / self.total

    def ppf(self, r: float) -> float:
        """Point where the cumulative probability reaches r, strictly inside (lo, hi)."""
        r = float(r)
        if not 0.0 <= r <= 1.0:
            raise ValueError("ppf needs r in [0, 1].")
        target = min(r * self.total, self.total * (1.0 - 1e-12))
        j = int(np.searchsorted(self._cum, target, side="right")) - 1
        j = min(max(j, 0), self.xs.size - 2)
        a, b = float(self.xs[j]), float(self.xs[j + 1])
        base = float(self._cum[j])

        def F(x):
            return base + self._integrate(a, x) - target

        fa, fb = F(a), F(b)
        if fa >= 0.0:
            x = a
        elif fb <= 0.0:
            x = b
        else:
            x = float(brentq(F, a, b, rtol=max(self.rtol, 1e-14)))
        # draws stay strictly inside (lo, hi)
        return float(np.clip(x, np.nextafter(self.lo, self.hi), np.nextafter(self.hi, self.lo)))


class GridSample(NamedTuple):
    lnP: InterpolatedLogPDF
    samples: dict
    lnPs: np.ndarray


def grid_and_sample(
    lnP: Callable[[dict], float],
    grid: Mapping,
    *,
    progress: bool = False,
    nsamples: int = 1,
    smoothing: float = 0.0,
    rtol: float = 1e-5,
    rng: Optional[np.random.Generator] = None,
) -> GridSample:
    """
    Sample a 1D parameter from its (unnormalized) log density.

    Args:
      lnP: called with {name: value} at each grid node.
      grid: {name: 1D increasing array of nodes}; exactly one entry.
      nsamples: number of inverse-transform draws.
      smoothing: UnivariateSpline smoothing factor (0 interpolates).

    Returns:
      GridSample(lnP, samples, lnPs): the normalized interpolated log
      density, {name: float} (or {name: ndarray} when nsamples > 1), and the
      normalized node values.
    """
    if len(grid) != 1:
        raise NotImplementedError("Can only currently sample from 1D distributions.")
    (name, xs), = grid.items()
    xs = check_grid(xs)
    if int(nsamples) < 1:
        raise ValueError("nsamples must be >= 1.")
    rng = np.random.default_rng() if rng is None else rng

    lnPs = np.array(
        [float(lnP({name: float(x)})) for x in tqdm(xs, desc="Grid sample", disable=not progress)],
        dtype=np.float64,
    )
    if not np.all(np.isfinite(lnPs)):
        raise ValueError("lnP must be finite at every grid node.")
    lnPs -= np.max(lnPs)

    # normalize; the smoothing acts on the log density
    ilnP = InterpolatedLogPDF(xs, lnPs, smoothing=smoothing, rtol=rtol)
    lnPs -= np.log(ilnP.total)
    ilnP = InterpolatedLogPDF(xs, lnPs, smoothing=smoothing, rtol=rtol)

    draws = np.array([ilnP.ppf(r) for r in rng.random(int(nsamples))], dtype=np.float64)
    samples = {name: float(draws[0])} if int(nsamples) == 1 else {name: draws}
    return GridSample(ilnP, samples, lnPs)
