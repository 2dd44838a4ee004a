"""
Tests for the Gibbs/HMC driver: chain bookkeeping, resume, pruning,
cancellation, interrupts and checkpoints.

Most tests use an unlensed 4x4 dataset so a sweep costs milliseconds; one
end-to-end test runs Taylor lensing on 8x8.

Run:
  cd <repo_root>; python -m pytest test/test_sampling.py -v
"""
from __future__ import annotations

import dataclasses
import tempfile
from pathlib import Path

import numpy as np
import pytest

from cmblens.chains_io import load_chains, load_rundat, swap_path
from cmblens.field import FlatField, FlatGrid
from cmblens.flat_dataset import load_sim_dataset
from cmblens.lensing import NoLens
from cmblens.operators import LazyBinaryOp, symmetric_funcop
from cmblens.sampling import CancelToken, SampleConfig, config_record, prune_maps, sample_joint

GRID = FlatGrid(4, 4, np.deg2rad(2.0 / 60.0))
APHI = np.linspace(0.5, 2.0, 12)
FAST_SYMP = ({"N": 5, "eps": 0.05},)


@pytest.fixture(scope="module")
def ds():
    return load_sim_dataset(GRID, seed=0, lensing=NoLens).ds


@pytest.fixture
def workdir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def _triple(f):
    return 3.0 * f


def _third(f):
    return f / 3.0


def _cfg(**kw) -> SampleConfig:
    base = dict(nsamps_per_chain=3, nchains=2, theta_range={"Aphi": APHI}, symp_kwargs=FAST_SYMP, seed=3)
    base.update(kw)
    return SampleConfig(**base)


class _CountingMap:
    """Serial starmap that records how many tasks each call got."""

    def __init__(self, on_call=None):
        self.calls = []
        self.on_call = on_call

    def __call__(self, fn, args):
        args = list(args)
        self.calls.append(len(args))
        if self.on_call is not None:
            self.on_call(len(self.calls))
        return [fn(*a) for a in args]


# --- Configuration ---

@pytest.mark.parametrize(
    "kw",
    [
        {"nsamps_per_chain": 0},
        {"nchains": 0},
        {"nchunk": 0},
        {"nsavemaps": 0},
        {"nburnin_fixtheta": -1},
        {"progress": "loud"},
        {"theta_range": {"Af": APHI, "Aphi": APHI}},
        {"theta_range": {"Aphi": np.array([1.0])}},
        {"theta_range": {"Aphi": [0.5, 1.0, 1.5]}},
        {"theta_range": {"Aphi": APHI[::-1]}},
        {"theta_range": {"Aphi": np.array([0.5, 1.0, 1.0, 1.5])}},
        {"phi_start": "random"},
        {"phi_start": 1.0},
        {"theta_start": 1.0},
    ],
)
def test_config_validation(kw):
    """Invalid settings raise ValueError at construction."""
    with pytest.raises(ValueError):
        _cfg(**kw)


def test_config_normalizes_containers():
    """theta_range values become float arrays and symp_kwargs a tuple of dicts."""
    cfg = _cfg(theta_range={"Aphi": [0.5, 1.0, 1.5, 2.0]}, symp_kwargs=[{"N": 2, "eps": 0.1}])
    assert cfg.theta_range["Aphi"].dtype == np.float64
    assert cfg.symp_kwargs == ({"N": 2, "eps": 0.1},)
    assert not cfg.verbose


def test_config_record_keeps_operators():
    """Operator-valued settings are recorded as operators, not unpacked into dicts."""
    Nphi = 2.0 * symmetric_funcop(_triple, _third)
    assert isinstance(Nphi, LazyBinaryOp)
    rec = config_record(_cfg(Nphi=Nphi))
    assert rec["Nphi"] is Nphi
    assert rec["nsamps_per_chain"] == 3
    assert set(rec) == {f.name for f in dataclasses.fields(SampleConfig)}


def test_sample_joint_needs_config(ds):
    """cfg must be a SampleConfig."""
    with pytest.raises(ValueError, match="SampleConfig"):
        sample_joint(ds, {"nsamps_per_chain": 1})


# --- Chain bookkeeping ---

def test_chain_lengths_and_records(ds):
    """Each chain holds the initial record plus one per sweep, chunked by nchunk."""
    pmap = _CountingMap()
    result = sample_joint(ds, _cfg(nchunk=2), pmap=pmap)
    assert result.completed
    assert len(result.chains) == 2
    for chain in result.chains:
        assert [rec["i"] for rec in chain] == [1, 2, 3, 4]
        assert set(chain[0]) == {"i", "phi_mix", "theta", "rng_state"}
        rec = chain[-1]
        for key in ("f", "f_mix", "f_lensed", "phi", "phi_mix", "theta", "lnP_theta", "dH", "accept", "lnP", "timing"):
            assert key in rec
        assert APHI[0] <= rec["theta"]["Aphi"] <= APHI[-1]
        assert rec["lnP_theta"].shape == APHI.shape
        assert isinstance(rec["accept"], bool)
        assert np.isfinite(rec["lnP"])
    # chunks of 2 then 1 sweep, both chains per call
    assert pmap.calls == [2, 2]


def test_same_seed_same_chains(ds):
    """Runs are reproducible from the seed; chains differ from each other."""
    a = sample_joint(ds, _cfg()).chains
    b = sample_joint(ds, _cfg()).chains
    for ca, cb in zip(a, b):
        assert [r["theta"] for r in ca] == [r["theta"] for r in cb]
        np.testing.assert_array_equal(ca[-1]["phi_mix"].data, cb[-1]["phi_mix"].data)
    assert a[0][-1]["theta"] != a[1][-1]["theta"]


def test_theta_start_and_fixed_theta_burnin(ds):
    """theta stays at theta_start for the first nburnin_fixtheta samples."""
    cfg = _cfg(nsamps_per_chain=3, theta_start={"Aphi": 1.25}, nburnin_fixtheta=2)
    chain = sample_joint(ds, cfg).chains[0]
    assert chain[0]["theta"] == {"Aphi": 1.25}
    assert chain[1]["theta"] == {"Aphi": 1.25}
    assert chain[1]["lnP_theta"] is None
    assert chain[2]["lnP_theta"] is not None


def test_always_accept_burnin(ds):
    """Proposals are accepted unconditionally while i < nburnin_always_accept."""
    cfg = _cfg(nburnin_always_accept=100, symp_kwargs=({"N": 3, "eps": 1.0},))
    for chain in sample_joint(ds, cfg).chains:
        assert all(rec["accept"] for rec in chain[1:])


def test_no_theta_range_keeps_theta_empty(ds):
    """Without a theta grid only f and phi are sampled."""
    chain = sample_joint(ds, _cfg(theta_range={}, nchains=1)).chains[0]
    assert all(rec["theta"] == {} for rec in chain)
    assert all(rec["lnP_theta"] is None for rec in chain[1:])


def test_phi_start_field(ds):
    """A Field phi_start seeds every chain's phi."""
    phi0 = FlatField(np.full(GRID.map_shape, 1e-7), GRID)
    chains = sample_joint(ds, _cfg(phi_start=phi0, nsamps_per_chain=1)).chains
    for chain in chains:
        np.testing.assert_allclose(chain[0]["phi_mix"].to_map().data, phi0.data)


def test_phi_start_best_fit_uses_map_joint(ds):
    """'best_fit' starts each chain at the joint maximum."""
    cfg = _cfg(phi_start="best_fit", MAP_kwargs={"nsteps": 1}, nsamps_per_chain=1)
    pmap = _CountingMap()
    chains = sample_joint(ds, cfg, pmap=pmap).chains
    assert len(chains) == 2
    # one call to start phi, one chunk
    assert pmap.calls == [2, 2]


def test_verbose_progress_prints_records(ds, capsys):
    """progress='verbose' prints one [gibbs] line per record."""
    sample_joint(ds, _cfg(progress="verbose", nchains=1, nsamps_per_chain=2))
    out = capsys.readouterr().out
    assert "[init] started 1 chains" in out
    assert "[gibbs] chain=0 i=2" in out
    assert "[gibbs] chain=0 i=3" in out


# --- Pruning ---

def test_prune_maps_keeps_every_nth_and_last():
    """Field entries survive where (i - 1) % nsavemaps == 0, and on the last record."""
    f = FlatField(np.zeros(GRID.map_shape), GRID)
    chain = [{"i": i, "phi": f, "dH": 0.1} for i in range(1, 9)]
    prune_maps([chain], 3)
    kept = [rec["i"] for rec in chain if "phi" in rec]
    assert kept == [1, 4, 7, 8]
    assert all("dH" in rec for rec in chain)


def test_sampling_prunes_maps(ds):
    """Chains returned by sample_joint are pruned the same way."""
    chain = sample_joint(ds, _cfg(nsamps_per_chain=7, nsavemaps=3, nchains=1, nchunk=3)).chains[0]
    assert [rec["i"] for rec in chain if "f" in rec] == [4, 7, 8]
    assert [rec["i"] for rec in chain if "phi_mix" in rec] == [1, 4, 7, 8]


# --- Checkpoints and resume ---

def test_checkpoint_written_atomically(ds, workdir):
    """The checkpoint exists after the run, with no swap file left over."""
    path = workdir / "chains.npz"
    result = sample_joint(ds, _cfg(filename=str(path), metadata={"note": "test"}))
    assert path.is_file()
    assert not swap_path(path).exists()
    saved = load_chains(path)
    assert [[r["i"] for r in c] for c in saved] == [[r["i"] for r in c] for c in result.chains]
    rundat = load_rundat(path)
    assert rundat["nsamps_per_chain"] == 3
    assert rundat["metadata"] == {"note": "test"}


def test_load_chains_needs_chains_entry(workdir):
    """Files without a 'chains' entry are rejected; rundat is optional."""
    path = workdir / "other.npz"
    np.savez_compressed(path, x=np.zeros(3))
    with pytest.raises(ValueError, match="chains"):
        load_chains(path)
    assert load_rundat(path) == {}


def test_resume_matches_uninterrupted_run(ds, workdir):
    """3 samples then a resume to 6 gives the same chains as 6 in one go."""
    path = workdir / "chains.npz"
    full = sample_joint(ds, _cfg(nsamps_per_chain=6)).chains

    cfg = _cfg(nsamps_per_chain=3, filename=str(path))
    sample_joint(ds, cfg)
    resumed = sample_joint(ds, dataclasses.replace(cfg, nsamps_per_chain=6), chains="resume").chains

    for a, b in zip(full, resumed):
        assert [r["i"] for r in a] == [r["i"] for r in b] == list(range(1, 8))
        assert [r["theta"] for r in a] == [r["theta"] for r in b]
        for ra, rb in zip(a, b):
            np.testing.assert_array_equal(ra["phi_mix"].data, rb["phi_mix"].data)


def test_resume_from_path_or_list(ds, workdir):
    """Chains resume from an explicit path or an in-memory list."""
    path = workdir / "run.npz"
    first = sample_joint(ds, _cfg(nsamps_per_chain=1, filename=str(path))).chains

    from_path = sample_joint(ds, _cfg(nsamps_per_chain=2), chains=str(path)).chains
    from_list = sample_joint(ds, _cfg(nsamps_per_chain=2), chains=first).chains
    for a, b in zip(from_path, from_list):
        assert len(a) == len(b) == 3
        assert a[-1]["theta"] == b[-1]["theta"]


def test_resume_of_complete_chains_is_a_noop(ds):
    """Chains already at nsamps_per_chain are returned unchanged."""
    chains = sample_joint(ds, _cfg(nsamps_per_chain=1)).chains
    pmap = _CountingMap()
    result = sample_joint(ds, _cfg(nsamps_per_chain=1), chains=chains, pmap=pmap)
    assert result.completed
    assert pmap.calls == []


def test_resume_errors(ds, workdir):
    """'resume' needs a filename; missing files and empty chains raise."""
    with pytest.raises(ValueError, match="filename"):
        sample_joint(ds, _cfg(), chains="resume")
    with pytest.raises(FileNotFoundError):
        sample_joint(ds, _cfg(), chains=str(workdir / "missing.npz"))
    with pytest.raises(ValueError):
        sample_joint(ds, _cfg(), chains=[[]])


# --- Cancellation and interrupts ---

def test_cancel_before_start(ds):
    """A pre-cancelled token stops before the first chunk."""
    token = CancelToken()
    token.cancel()
    result = sample_joint(ds, _cfg(), cancel=token)
    assert not result.completed
    assert all(len(chain) == 1 for chain in result.chains)


def test_cancel_between_chunks(ds):
    """Cancelling during a chunk returns after that chunk completes."""
    token = CancelToken()
    pmap = _CountingMap(on_call=lambda n: token.cancel())
    result = sample_joint(ds, _cfg(nsamps_per_chain=4, nchunk=2), pmap=pmap, cancel=token)
    assert not result.completed
    assert all(len(chain) == 3 for chain in result.chains)


def _interrupt_on_second(n):
    if n == 2:
        raise KeyboardInterrupt


def test_interruptable_run_returns_progress(ds, workdir):
    """With interruptable, KeyboardInterrupt warns and returns completed chunks."""
    path = workdir / "chains.npz"
    cfg = _cfg(nsamps_per_chain=4, interruptable=True, filename=str(path))
    with pytest.warns(RuntimeWarning, match="interrupted"):
        result = sample_joint(ds, cfg, pmap=_CountingMap(on_call=_interrupt_on_second))
    assert not result.completed
    assert all(len(chain) == 2 for chain in result.chains)
    assert all(len(chain) == 2 for chain in load_chains(path))


def test_non_interruptable_run_reraises(ds):
    """Without interruptable, KeyboardInterrupt propagates."""
    with pytest.raises(KeyboardInterrupt):
        sample_joint(ds, _cfg(nsamps_per_chain=4), pmap=_CountingMap(on_call=_interrupt_on_second))


def test_worker_errors_propagate(ds):
    """Other exceptions are never swallowed."""

    def boom(n):
        raise RuntimeError("worker failed")

    with pytest.raises(RuntimeError, match="worker failed"):
        sample_joint(ds, _cfg(interruptable=True), pmap=_CountingMap(on_call=boom))


# --- End to end with lensing ---

def test_lensed_end_to_end():
    """Two sweeps of two chains on a Taylor-lensed 8x8 patch."""
    sim = load_sim_dataset(FlatGrid(8, 8, np.deg2rad(2.0 / 60.0)), seed=1)
    cfg = SampleConfig(
        nsamps_per_chain=2,
        nchains=2,
        theta_range={"Aphi": np.linspace(0.5, 1.5, 6)},
        symp_kwargs=({"N": 2, "eps": 0.01},),
        seed=0,
    )
    result = sample_joint(sim.ds, cfg)
    assert result.completed
    for chain in result.chains:
        assert len(chain) == 3
        rec = chain[-1]
        assert rec["f_lensed"].grid == sim.ds.grid
        assert np.isfinite(rec["dH"])
        assert 0.5 <= rec["theta"]["Aphi"] <= 1.5
