"""
Leapfrog integration for the Hamiltonian Monte Carlo potential step.

The potential U is the log posterior itself (not its negative), so

    H(x, p) = U(x) - p . Lambda^{-1} p / 2

and a proposal is accepted with probability min(1, exp(dH)).
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

import numpy as np
from tqdm import tqdm

from .field import Field
from .operators import ImplicitOp

HIST_NAMES = ("i", "x", "p", "dUdx", "H")


def _solve(Lambda, p):
    if isinstance(Lambda, ImplicitOp):
        return Lambda.apply_inverse(p)
    return p / Lambda


def _dot(a, b) -> float:
    if isinstance(a, Field):
        return float(a.dot(b))
    return float(np.real(np.vdot(a, b)))


def symplectic_integrate(
    x0,
    p0,
    Lambda,
    U: Callable,
    dUdx: Callable,
    *,
    N: int = 50,
    eps: float = 0.1,
    progress: bool = False,
    hist: Optional[Iterable[str]] = None,
):
    """
    Integrate N leapfrog steps of size eps from (x0, p0) with mass matrix Lambda.

    Args:
      x0, p0: starting position and momentum (fields or arrays).
      Lambda: mass matrix; an operator (inverted with apply_inverse) or a
        positive scalar/array.
      U, dUdx: potential and its gradient.
      hist: names from ("i", "x", "p", "dUdx", "H"); when given, one tuple per
        step with those entries (in that order) is also returned.

    Returns:
      (dH, x, p) or (dH, x, p, history); dH = H(x_N, p_N) - H(x0, p0).
    """
    N = int(N)
    if N < 0:
        raise ValueError("N must be >= 0.")
    if hist is not None:
        hist = tuple(hist)
        unknown = [h for h in hist if h not in HIST_NAMES]
        if unknown:
            raise ValueError(f"Unknown hist names {unknown}; expected a subset of {HIST_NAMES}.")

    def H(x, p) -> float:
        return float(U(x)) - _dot(p, _solve(Lambda, p)) / 2.0

    eps = float(eps)
    x, p = x0, p0
    g = dUdx(x)
    history = []

    for i in tqdm(range(1, N + 1), desc="Symplectic integration", disable=not progress):
        x_next = x - eps * _solve(Lambda, p - (eps / 2.0) * g)
        g_next = dUdx(x_next)
        p_next = p - (eps / 2.0) * (g_next + g)
        x, p, g = x_next, p_next, g_next

        if hist is not None:
            entry = {"i": i, "x": x, "p": p, "dUdx": g}
            if "H" in hist:
                entry["H"] = H(x, p)
            history.append(tuple(entry[h] for h in hist))

    dH = 0.0 if N == 0 else H(x, p) - H(x0, p0)

    if hist is None:
        return dH, x, p
    return dH, x, p, history
