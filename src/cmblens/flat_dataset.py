"""
Flat-sky lensing dataset: data model, posterior, and conditional samplers.

Model:
  d = M L(phi) f + n,   f ~ N(0, Cf),  phi ~ N(0, Cphi),  n ~ N(0, Cn)

Mixed variables (what the Gibbs sampler moves in):
  f_mix = D f,  phi_mix = G phi
with fixed, invertible D and G (identity by default).

Log posterior (mode "unlensed", up to a constant):
  lnP = -1/2 [ r.Cn^-1 r + f.Cf^-1 f + phi.Cphi^-1 phi
               + logdet Cn + logdet Cf + logdet Cphi ],   r = d - M L f
In mode "mix" the arguments are (f_mix, phi_mix) and the Jacobian of the
un-mixing is included.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from functools import partial
from typing import NamedTuple, Optional

import numpy as np
import scipy.sparse.linalg as spla
from scipy.optimize import minimize_scalar

from .field import FOURIER, MAP, FlatField, FlatGrid
from .lensing import TaylorLens
from .operators import DiagOp, IdentityOp, ImplicitOp, ParamDependentOp, evaluate
from .power import cl_to_diag_op, power_law_cl, white_noise_op

MODES = ("mix", "unlensed")


class DataSet:
    """
    What the Gibbs driver needs from a dataset.

    Subclasses provide evaluation at parameters, lensing, mixing, the log
    posterior and its gradient, the conditional field sampler and a joint
    maximizer.
    """

    Cphi: ImplicitOp

    def __call__(self, theta=None, **kwargs) -> "DataSet":
        raise NotImplementedError

    def lens(self, phi):
        raise NotImplementedError

    def mix(self, f, phi, L=None):
        raise NotImplementedError

    def unmix(self, f_mix, phi_mix, L=None):
        raise NotImplementedError

    def lnP(self, mode, f, phi, theta=None, L=None) -> float:
        raise NotImplementedError

    def grad_lnP(self, mode, f, phi, theta=None, L=None):
        raise NotImplementedError

    def sample_field(self, L, rng=None, *, mode="sample", guess=None, tol=1e-1, nsteps=500, progress=False):
        raise NotImplementedError

    def map_joint(self, rng=None, *, quasi_sample=False, alpha_max=0.3, nsteps=40, progress=False):
        raise NotImplementedError


def _logdet_or_zero(op) -> float:
    # equality, not identity: IdentityOp comes back as a copy from worker processes
    if op == IdentityOp:
        return 0.0
    return float(op.logdet())


def _as_diag(op) -> Optional[DiagOp]:
    if isinstance(op, ParamDependentOp):
        op = op.op
    return op if isinstance(op, DiagOp) else None


def _mean_diag(op) -> Optional[float]:
    op = _as_diag(op)
    if op is None:
        return None
    return float(np.mean(np.real(op.diag.data)))


@dataclass(frozen=True)
class FlatDataSet(DataSet):
    """
    Args:
      d: observed map.
      Cf, Cphi, Cn: signal, potential and noise covariances (operators,
        possibly ParamDependentOp).
      M: data mask / transfer function.
      D, G: field and potential mixing matrices.
      lensing: lensing operator class, constructed as lensing(phi).
    """

    d: FlatField
    Cf: ImplicitOp
    Cphi: ImplicitOp
    Cn: ImplicitOp
    M: ImplicitOp = IdentityOp
    D: ImplicitOp = IdentityOp
    G: ImplicitOp = IdentityOp
    lensing: type = TaylorLens

    def __post_init__(self) -> None:
        if not isinstance(self.d, FlatField):
            raise ValueError("d must be a FlatField.")

    @property
    def grid(self) -> FlatGrid:
        return self.d.grid

    def __call__(self, theta=None, **kwargs) -> "FlatDataSet":
        """Dataset with every parameter-dependent operator evaluated at theta."""
        theta = {**(theta or {}), **kwargs}
        if not theta:
            return self
        ops = {
            fld.name: evaluate(getattr(self, fld.name), theta)
            for fld in dataclasses.fields(self)
            if isinstance(getattr(self, fld.name), ParamDependentOp)
        }
        return dataclasses.replace(self, **ops)

    # --- lensing and mixing ---

    def lens(self, phi: FlatField):
        return self.lensing(phi)

    def _lens_at(self, L, phi: FlatField):
        return self.lens(phi) if L is None else L.at(phi)

    def mix(self, f: Optional[FlatField], phi: FlatField, L=None) -> tuple[Optional[FlatField], FlatField]:
        """(D f, G phi); f may be None when only the potential is needed."""
        return (None if f is None else self.D * f), self.G * phi

    def unmix(self, f_mix: Optional[FlatField], phi_mix: FlatField, L=None) -> tuple[Optional[FlatField], FlatField]:
        return (None if f_mix is None else self.D.apply_inverse(f_mix)), self.G.apply_inverse(phi_mix)

    # --- posterior ---

    def _check_mode(self, mode: str) -> None:
        if mode not in MODES:
            raise ValueError(f"Unknown lnP mode {mode!r}; expected one of {MODES}.")

    def lnP(self, mode: str, f: FlatField, phi: FlatField, theta=None, L=None) -> float:
        self._check_mode(mode)
        ds = self(theta)
        if mode == "mix":
            f, phi = ds.unmix(f, phi)
        L = ds._lens_at(L, phi)

        r = ds.d - ds.M * (L * f)
        lnP = -0.5 * (
            r.dot(ds.Cn.apply_inverse(r))
            + f.dot(ds.Cf.apply_inverse(f))
            + phi.dot(ds.Cphi.apply_inverse(phi))
            + ds.Cn.logdet()
            + ds.Cf.logdet()
            + ds.Cphi.logdet()
        )
        if mode == "mix":
            lnP -= _logdet_or_zero(ds.D) + _logdet_or_zero(ds.G)
        return float(lnP)

    def grad_lnP(self, mode: str, f: FlatField, phi: FlatField, theta=None, L=None) -> tuple[FlatField, FlatField]:
        """(d lnP / d f, d lnP / d phi), in the mixed variables for mode "mix"."""
        self._check_mode(mode)
        ds = self(theta)
        if mode == "mix":
            f, phi = ds.unmix(f, phi)
        L = ds._lens_at(L, phi)

        u = ds.M.adjoint() * ds.Cn.apply_inverse(ds.d - ds.M * (L * f))
        gf = (L.adjoint() * u - ds.Cf.apply_inverse(f)).to_map()
        gphi = (L.phi_gradient(u, f) - ds.Cphi.apply_inverse(phi)).to_map()
        if mode == "mix":
            gf = ds.D.adjoint().apply_inverse(gf)
            gphi = ds.G.adjoint().apply_inverse(gphi)
        return gf, gphi

    # --- conditional field sampler ---

    def sample_field(
        self,
        L,
        rng: Optional[np.random.Generator] = None,
        *,
        mode: str = "sample",
        guess: Optional[FlatField] = None,
        tol: float = 1e-1,
        nsteps: int = 500,
        progress: bool = False,
    ) -> FlatField:
        """
        Wiener filter (mode "map") or Wiener-filter sample (mode "sample") of f.

        Solves (Cf^-1 + L' M' Cn^-1 M L) f = L' M' Cn^-1 d [+ fluctuations]
        with preconditioned conjugate gradient, warm-started from `guess`.
        """
        if mode not in ("sample", "map"):
            raise ValueError(f"Unknown sample_field mode {mode!r}; expected 'sample' or 'map'.")
        grid = self.grid
        shape = grid.map_shape
        LMt = L.adjoint() * self.M.adjoint()
        A = self.Cf ** -1 + LMt * self.Cn ** -1 * self.M * L

        b = LMt * self.Cn.apply_inverse(self.d)
        if mode == "sample":
            if rng is None:
                raise ValueError("sample_field(mode='sample') needs an rng.")
            w_f = self.d.white_noise(rng)
            w_n = self.d.white_noise(rng)
            b = b + self.Cf.sqrt().apply_inverse(w_f) + LMt * self.Cn.sqrt().apply_inverse(w_n)
        b = b.to_map().data.reshape(-1)

        def matvec(v: np.ndarray) -> np.ndarray:
            f = FlatField(np.asarray(v, dtype=np.float64).reshape(shape), grid, MAP)
            return (A * f).to_map().data.reshape(-1)

        n = grid.n_pix
        A_lin = spla.LinearOperator((n, n), matvec=matvec, dtype=np.float64)

        precond = None
        cf = _as_diag(self.Cf)
        nbar = _mean_diag(self.Cn)
        if cf is not None and cf.basis == FOURIER and nbar is not None and nbar > 0:
            P = DiagOp(1.0 / (cf.pinv().diag + 1.0 / nbar))

            def psolve(v: np.ndarray) -> np.ndarray:
                f = FlatField(np.asarray(v, dtype=np.float64).reshape(shape), grid, MAP)
                return (P * f).to_map().data.reshape(-1)

            precond = spla.LinearOperator((n, n), matvec=psolve, dtype=np.float64)

        x0 = None if guess is None else guess.to_map().data.reshape(-1)
        counter = {"n": 0}

        def _cb(_xk):
            counter["n"] += 1

        x, info = spla.cg(
            A_lin,
            b,
            x0=x0,
            atol=0.0,
            rtol=float(tol),
            maxiter=int(nsteps),
            M=precond,
            callback=_cb,
        )
        if info < 0:
            raise RuntimeError(f"Wiener-filter CG failed (illegal input or breakdown, info={info}).")
        if progress:
            status = "converged" if info == 0 else "hit maxiter"
            print(f"[wf] mode={mode} iters={counter['n']} {status}", flush=True)
        return FlatField(x.reshape(shape), grid, MAP)

    # --- joint maximizer ---

    def map_joint(
        self,
        rng: Optional[np.random.Generator] = None,
        *,
        quasi_sample: bool = False,
        alpha_max: float = 0.3,
        nsteps: int = 40,
        Nphi: Optional[ImplicitOp] = None,
        wf_kwargs: Optional[dict] = None,
        progress: bool = False,
    ) -> tuple[FlatField, FlatField]:
        """
        Joint maximum of P(f, phi) by coordinate ascent.

        Alternates a Wiener filter in f (a Wiener-filter sample when
        quasi_sample) with a preconditioned gradient step in phi whose length
        is found by a bounded line search in [0, alpha_max].
        """
        wf_kwargs = {"tol": 1e-1, "nsteps": 500, **(wf_kwargs or {})}
        mode = "sample" if quasi_sample else "map"
        if quasi_sample and rng is None:
            raise ValueError("map_joint(quasi_sample=True) needs an rng.")
        Lambda = self.Cphi.pinv() if Nphi is None else self.Cphi.pinv() + Nphi.pinv()

        phi = FlatField.zeros(self.grid)
        L = self.lens(phi)
        f = None
        for step in range(int(nsteps)):
            f = self.sample_field(L, rng, mode=mode, guess=f, **wf_kwargs)
            _, gphi = self.grad_lnP("unlensed", f, phi, L=L)
            direction = Lambda.apply_inverse(gphi).to_map()

            res = minimize_scalar(
                lambda a: -self.lnP("unlensed", f, phi + a * direction, L=L),
                bounds=(0.0, float(alpha_max)),
                method="bounded",
                options={"xatol": 1e-3 * float(alpha_max)},
            )
            alpha = float(res.x)
            phi = phi + alpha * direction
            L = L.at(phi)
            if progress:
                lnP = self.lnP("unlensed", f, phi, L=L)
                print(f"[map] step={step + 1}/{int(nsteps)} alpha={alpha:.3g} lnP={lnP:.6g}", flush=True)
        return f, phi


### simulated datasets


class SimDataSet(NamedTuple):
    ds: FlatDataSet
    f: FlatField
    phi: FlatField


def _Cf_at(Cf0: DiagOp, Af: float = 1.0) -> DiagOp:
    return DiagOp(Cf0.diag * float(Af))


def _Cphi_at(Cphi0: DiagOp, Aphi: float = 1.0) -> DiagOp:
    return DiagOp(Cphi0.diag * float(Aphi))


def default_cls(ell: np.ndarray) -> dict[str, np.ndarray]:
    """Power-law stand-ins for the unlensed TT [muK^2] and phi-phi spectra."""
    return {
        "TT": power_law_cl(ell, 1e-2, -3.0, ell_pivot=1000.0),
        "phiphi": power_law_cl(ell, 1.3e-19, -4.0, ell_pivot=1000.0),
    }


def load_sim_dataset(
    grid: FlatGrid,
    *,
    seed: Optional[int] = None,
    Af: float = 1.0,
    Aphi: float = 1.0,
    noise_uK_arcmin: float = 3.0,
    cls: Optional[dict] = None,
    ell_max: int = 20000,
    mask: Optional[np.ndarray] = None,
    lensing: type = TaylorLens,
) -> SimDataSet:
    """
    Simulate phi, f and d = M L(phi) f + n, and build the matching dataset.

    Cf and Cphi are ParamDependentOps in the amplitudes Af and Aphi (fiducial
    value 1); the simulation uses the given Af, Aphi.

    Args:
      cls: {"TT": C_ell, "phiphi": C_ell} tabulated at ell = 0..ell_max;
        default_cls() when None.
      mask: optional (nx, ny) map of 0/1 weights, applied as M.
    """
    ell = np.arange(int(ell_max) + 1, dtype=np.float64)
    cls = default_cls(ell) if cls is None else cls
    if not {"TT", "phiphi"} <= set(cls):
        raise ValueError("cls must provide 'TT' and 'phiphi'.")

    Cf0 = cl_to_diag_op(grid, ell, np.asarray(cls["TT"])[: ell.size])
    Cphi0 = cl_to_diag_op(grid, ell, np.asarray(cls["phiphi"])[: ell.size])
    Cf = ParamDependentOp(partial(_Cf_at, Cf0))
    Cphi = ParamDependentOp(partial(_Cphi_at, Cphi0))
    Cn = white_noise_op(grid, noise_uK_arcmin)

    if mask is None:
        M = IdentityOp
    else:
        mask = np.asarray(mask, dtype=np.float64)
        if mask.shape != grid.map_shape:
            raise ValueError(f"mask must have shape {grid.map_shape}, got {mask.shape}.")
        M = DiagOp(FlatField(mask, grid, MAP))

    rng = np.random.default_rng(seed)
    phi = Cphi(Aphi=Aphi).simulate(rng).to_map()
    f = Cf(Af=Af).simulate(rng).to_map()
    n = Cn.simulate(rng).to_map()
    d = (M * (lensing(phi) * f) + n).to_map()

    ds = FlatDataSet(d=d, Cf=Cf, Cphi=Cphi, Cn=Cn, M=M, lensing=lensing)
    return SimDataSet(ds, f, phi)
