"""
Gibbs sampler for the joint posterior P(f, phi, theta | d).

Each sweep of each chain:
  1. f      ~ P(f | phi, theta)       Wiener-filter sample (dataset.sample_field)
  2. theta  ~ P(theta | f_mix, phi)   1D grid inverse-transform sample
  3. phi    ~ P(phi | f_mix, theta)   one HMC proposal per entry of symp_kwargs

Chains run as independent tasks (one per chain per chunk of `nchunk`
sweeps), dispatched to a worker pool. Every record carries the chain's
bit-generator state, and each chunk restarts from the last record only, so a
run resumed from a checkpoint follows the same trajectory as an
uninterrupted one.
"""

from __future__ import annotations

import dataclasses
import math
import multiprocessing as mp
import threading
import time
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, NamedTuple, Optional

import numpy as np
from tqdm import tqdm

from .chains_io import load_chains, save_chains
from .field import Field
from .grid_sample import check_grid, grid_and_sample
from .hmc import symplectic_integrate
from .operators import ImplicitOp

PROGRESS_MODES = ("off", "summary", "verbose")
PHI_START_MODES = ("quasi_sample", "best_fit")

DEFAULT_WF_KWARGS = {"tol": 1e-1, "nsteps": 500}
DEFAULT_SYMP_KWARGS = ({"N": 25, "eps": 0.01},)
DEFAULT_MAP_KWARGS = {"alpha_max": 0.3, "nsteps": 40}


@dataclass(frozen=True)
class SampleConfig:
    """
    Run configuration for `sample_joint`.

    nsamps_per_chain counts Gibbs sweeps (records after the initial one);
    theta_range maps at most one parameter name to its grid of nodes;
    phi_start is 0, a Field, "quasi_sample" or "best_fit".
    """

    nsamps_per_chain: int
    nchains: int = 1
    nworkers: int = 1
    nchunk: int = 1
    nsavemaps: int = 1
    nburnin_always_accept: int = 0
    nburnin_fixtheta: int = 0
    theta_range: Mapping = field(default_factory=dict)
    theta_start: Optional[Mapping] = None
    phi_start: object = 0
    Nphi: Optional[ImplicitOp] = None
    wf_kwargs: Mapping = field(default_factory=lambda: dict(DEFAULT_WF_KWARGS))
    symp_kwargs: tuple = DEFAULT_SYMP_KWARGS
    MAP_kwargs: Mapping = field(default_factory=lambda: dict(DEFAULT_MAP_KWARGS))
    progress: str = "off"
    interruptable: bool = False
    filename: Optional[str] = None
    seed: Optional[int] = None
    metadata: object = None

    def __post_init__(self) -> None:
        for name in ("nsamps_per_chain", "nchains", "nworkers", "nchunk", "nsavemaps"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1.")
        for name in ("nburnin_always_accept", "nburnin_fixtheta"):
            if int(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0.")
        if self.progress not in PROGRESS_MODES:
            raise ValueError(f"progress must be one of {PROGRESS_MODES}, got {self.progress!r}.")
        if len(self.theta_range) > 1:
            raise ValueError("Can only currently sample one parameter at a time.")
        theta_range = {}
        for k, v in self.theta_range.items():
            try:
                theta_range[str(k)] = check_grid(v)
            except ValueError as e:
                raise ValueError(f"theta_range[{k!r}]: {e}") from e
        object.__setattr__(self, "theta_range", theta_range)
        if self.theta_start is not None:
            if not isinstance(self.theta_start, Mapping):
                raise ValueError("theta_start must be None or a mapping of parameter values.")
            object.__setattr__(self, "theta_start", {str(k): float(v) for k, v in self.theta_start.items()})
        if not isinstance(self.phi_start, Field):
            named = isinstance(self.phi_start, str) and self.phi_start in PHI_START_MODES
            zero = np.isscalar(self.phi_start) and not isinstance(self.phi_start, str) and self.phi_start == 0
            if not (named or zero):
                raise ValueError(f"phi_start must be 0, a Field, or one of {PHI_START_MODES}.")
        object.__setattr__(self, "wf_kwargs", dict(self.wf_kwargs))
        object.__setattr__(self, "MAP_kwargs", dict(self.MAP_kwargs))
        object.__setattr__(self, "symp_kwargs", tuple(dict(kw) for kw in self.symp_kwargs))
        if self.filename is not None:
            object.__setattr__(self, "filename", str(self.filename))

    @property
    def verbose(self) -> bool:
        return self.progress == "verbose"


class SampleResult(NamedTuple):
    chains: list
    completed: bool


class CancelToken:
    """Cooperative stop request, honored at the next chunk boundary."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _restore_rng(rng_state: dict) -> np.random.Generator:
    bit_generator = getattr(np.random, rng_state["bit_generator"])()
    bit_generator.state = rng_state
    return np.random.Generator(bit_generator)


def _serial_starmap(fn: Callable, args) -> list:
    return [fn(*a) for a in args]


def prune_maps(chains: list[list[dict]], nsavemaps: int) -> None:
    """
    Drop Field entries from every record but the last of each chain, unless
    (i - 1) is a multiple of nsavemaps.
    """
    for chain in chains:
        for rec in chain[:-1]:
            if (int(rec["i"]) - 1) % int(nsavemaps) != 0:
                for k in [k for k, v in rec.items() if isinstance(v, Field)]:
                    del rec[k]


def config_record(cfg: SampleConfig) -> dict:
    """Field-by-field dict of a config; operators are kept as objects, not unpacked."""
    return {f.name: getattr(cfg, f.name) for f in dataclasses.fields(cfg)}


def momentum_mass(ds, Nphi: Optional[ImplicitOp] = None) -> ImplicitOp:
    """HMC mass matrix pinv(Cphi) [+ pinv(Nphi)]."""
    if Nphi is None:
        return ds.Cphi.pinv()
    return ds.Cphi.pinv() + Nphi.pinv()


### chain initialization


def _start_phi(ds, theta: dict, rng_state: dict, quasi_sample: bool, map_kwargs: dict, verbose: bool):
    rng = _restore_rng(rng_state)
    _, phi = ds(theta).map_joint(rng, quasi_sample=quasi_sample, progress=verbose, **map_kwargs)
    return phi, rng.bit_generator.state


def _initial_chains(ds, cfg: SampleConfig, starmap: Callable) -> list[list[dict]]:
    rngs = [np.random.default_rng(s) for s in np.random.SeedSequence(cfg.seed).spawn(int(cfg.nchains))]

    thetas = []
    for rng in rngs:
        if cfg.theta_start is not None:
            thetas.append(dict(cfg.theta_start))
        else:
            thetas.append({k: float(v[0] + rng.random() * (v[-1] - v[0])) for k, v in cfg.theta_range.items()})
    states = [rng.bit_generator.state for rng in rngs]

    if isinstance(cfg.phi_start, Field):
        phis = [cfg.phi_start] * int(cfg.nchains)
    elif cfg.phi_start in PHI_START_MODES:
        map_kwargs = {**cfg.MAP_kwargs, "Nphi": cfg.Nphi, "wf_kwargs": cfg.wf_kwargs}
        quasi = cfg.phi_start == "quasi_sample"
        started = list(
            starmap(
                _start_phi,
                [(ds, theta, state, quasi, map_kwargs, cfg.verbose) for theta, state in zip(thetas, states)],
            )
        )
        phis = [phi for phi, _ in started]
        states = [state for _, state in started]
    else:
        phis = [ds.Cphi.zero().diag] * int(cfg.nchains)

    chains = []
    for theta, phi, state in zip(thetas, phis, states):
        _, phi_mix = ds(theta).mix(None, phi)
        chains.append([{"i": 1, "phi_mix": phi_mix, "theta": theta, "rng_state": state}])
    return chains


def _resume_chains(chains, cfg: SampleConfig) -> list[list[dict]]:
    if isinstance(chains, str) and chains == "resume":
        if cfg.filename is None:
            raise ValueError("chains='resume' needs cfg.filename.")
        return load_chains(Path(cfg.filename))
    if isinstance(chains, (str, Path)):
        return load_chains(Path(chains))
    chains = [list(chain) for chain in chains]
    if not chains or any(not chain for chain in chains):
        raise ValueError("chains to resume must be non-empty lists of records.")
    return chains


### one chunk of one chain


def _run_chunk(ds, state: dict, nsteps: int, Lambda: ImplicitOp, cfg: SampleConfig) -> list[dict]:
    """Run `nsteps` Gibbs sweeps starting from the record `state`; returns the new records."""
    rng = _restore_rng(state["rng_state"])
    i0 = int(state["i"])
    theta = dict(state["theta"])
    phi_mix = state["phi_mix"]
    f = state.get("f")
    verbose = cfg.verbose

    ds_theta = ds(theta)
    _, phi = ds_theta.unmix(None, phi_mix)
    L = ds_theta.lens(phi)
    records = []

    for i in range(i0 + 1, i0 + int(nsteps) + 1):

        # f | phi, theta
        t0 = time.perf_counter()
        f = ds_theta.sample_field(L, rng, mode="sample", guess=f, progress=verbose, **cfg.wf_kwargs)
        f_mix, _ = ds_theta.mix(f, phi, L)
        t_f = time.perf_counter() - t0

        # theta | f_mix, phi_mix
        t0 = time.perf_counter()
        lnP_theta = None
        if i > int(cfg.nburnin_fixtheta) and cfg.theta_range:
            fixed = dict(theta)
            gs = grid_and_sample(
                lambda th: ds.lnP("mix", f_mix, phi_mix, {**fixed, **th}, L),
                cfg.theta_range,
                progress=verbose,
                rng=rng,
            )
            theta = {**theta, **gs.samples}
            lnP_theta = gs.lnPs
            ds_theta = ds(theta)
        t_theta = time.perf_counter() - t0

        # phi_mix | f_mix, theta
        t0 = time.perf_counter()
        dH, accept = None, None
        for symp_kwargs in cfg.symp_kwargs:
            dH, phi_test, _ = symplectic_integrate(
                phi_mix,
                Lambda.simulate(rng),
                Lambda,
                lambda x: ds_theta.lnP("mix", f_mix, x, None, L),
                lambda x: ds_theta.grad_lnP("mix", f_mix, x, None, L)[1],
                progress=verbose,
                **symp_kwargs,
            )
            if i < int(cfg.nburnin_always_accept) or np.log(rng.random()) < dH:
                phi_mix = phi_test
                accept = True
            else:
                accept = False

        f, phi = ds_theta.unmix(f_mix, phi_mix, L)
        L = L.at(phi) if hasattr(L, "at") else ds_theta.lens(phi)
        f_lensed = L * f
        t_phi = time.perf_counter() - t0

        records.append(
            {
                "i": i,
                "f": f,
                "f_mix": f_mix,
                "f_lensed": f_lensed,
                "phi": phi,
                "phi_mix": phi_mix,
                "theta": dict(theta),
                "lnP_theta": lnP_theta,
                "dH": None if dH is None else float(dH),
                "accept": accept,
                "lnP": ds_theta.lnP("unlensed", f, phi, None, L),
                "rng_state": rng.bit_generator.state,
                "timing": {"f": t_f, "theta": t_theta, "phi": t_phi},
            }
        )
    return records


### driver


def _format_record(k: int, rec: dict) -> str:
    dH = "-" if rec["dH"] is None else f"{rec['dH']:.4g}"
    theta = ", ".join(f"{n}={v:.4g}" for n, v in rec["theta"].items())
    return f"[gibbs] chain={k} i={rec['i']} accept={rec['accept']} dH={dH} lnP={rec['lnP']:.6g} {theta}".rstrip()


def sample_joint(
    ds,
    cfg: SampleConfig,
    *,
    chains=None,
    pmap: Optional[Callable] = None,
    cancel: Optional[CancelToken] = None,
) -> SampleResult:
    """
    Sample P(f, phi, theta | d) with `cfg.nchains` Gibbs chains.

    Args:
      ds: dataset (see flat_dataset.DataSet).
      chains: None to start fresh; "resume" to load cfg.filename; a path to
        load; or a list of chains to continue.
      pmap: starmap-like `pmap(fn, list_of_arg_tuples)`; defaults to a
        serial loop for one worker, else a spawn-context Pool.starmap.
      cancel: checked before each chunk.

    Returns:
      SampleResult(chains, completed). `completed` is False when cancelled or
      interrupted (with cfg.interruptable); chains then hold every completed
      chunk.
    """
    if not isinstance(cfg, SampleConfig):
        raise ValueError("cfg must be a SampleConfig.")

    pool = None
    if pmap is None:
        if int(cfg.nworkers) > 1:
            pool = mp.get_context("spawn").Pool(int(cfg.nworkers))
            pmap = pool.starmap
        else:
            pmap = _serial_starmap

    try:
        return _sample_joint(ds, cfg, chains, pmap, cancel)
    finally:
        if pool is not None:
            pool.terminate()
            pool.join()


def _sample_joint(ds, cfg: SampleConfig, chains, pmap: Callable, cancel: Optional[CancelToken]) -> SampleResult:
    rundat = config_record(cfg)
    filename = None if cfg.filename is None else Path(cfg.filename)
    show = cfg.progress != "off"

    if chains is None:
        chains = _initial_chains(ds, cfg, pmap)
        if show:
            print(f"[init] started {len(chains)} chains (phi_start={cfg.phi_start!r:.40})", flush=True)
    else:
        chains = _resume_chains(chains, cfg)
        if show:
            print(f"[init] resuming {len(chains)} chains at i={[c[-1]['i'] for c in chains]}", flush=True)

    Lambda = momentum_mass(ds, cfg.Nphi)
    nsamps = int(cfg.nsamps_per_chain)
    nchunk = int(cfg.nchunk)
    remaining = [nsamps - (len(chain) - 1) for chain in chains]
    nchunks_left = max(0, math.ceil(max(remaining) / nchunk))
    bar = tqdm(total=nchunks_left, desc="Gibbs chain", disable=cfg.progress != "summary")

    try:
        while True:
            remaining = [nsamps - (len(chain) - 1) for chain in chains]
            todo = [k for k, r in enumerate(remaining) if r > 0]
            if not todo:
                break
            if cancel is not None and cancel.cancelled:
                if show:
                    print("[gibbs] cancelled; returning current progress.", flush=True)
                return SampleResult(chains, False)

            tasks = [(ds, chains[k][-1], min(nchunk, remaining[k]), Lambda, cfg) for k in todo]
            try:
                results = list(pmap(_run_chunk, tasks))
            except KeyboardInterrupt:
                if cfg.interruptable:
                    warnings.warn("Chain interrupted. Returning current progress.", RuntimeWarning)
                    return SampleResult(chains, False)
                raise

            for k, records in zip(todo, results):
                chains[k].extend(records)
                if cfg.verbose:
                    for rec in records:
                        print(_format_record(k, rec), flush=True)

            # keep maps every nsavemaps samples, and always the last one (to continue the chain)
            prune_maps(chains, cfg.nsavemaps)

            if filename is not None:
                save_chains(filename, chains, rundat)
                if cfg.verbose:
                    print(f"[write] {filename}", flush=True)
            bar.update(1)
    finally:
        bar.close()

    return SampleResult(chains, True)
