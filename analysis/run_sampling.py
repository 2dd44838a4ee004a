#!/usr/bin/env python3
"""
Joint sampling of (f, phi, Aphi) on a simulated flat-sky patch.

Simulates a lensed map with the seed below, then runs NCHAINS Gibbs chains on
NWORKERS processes, checkpointing to OUT_PATH after every chunk. Re-running
resumes from the checkpoint if it exists.

Usage:
  cd <repo_root>
  python analysis/run_sampling.py [out_path] [nsamps_per_chain]
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np

# Parameters (override via argv or edit)
BASE_DIR = Path(__file__).resolve().parent
REPO_DIR = BASE_DIR.parent
OUT_PATH = REPO_DIR / "output" / "chains.npz"

NX = 64
PIXEL_ARCMIN = 2.0
SIM_SEED = 0
NOISE_UK_ARCMIN = 1.0
APHI_TRUE = 1.0

NSAMPS_PER_CHAIN = 200
NCHAINS = 4
NWORKERS = 4
NCHUNK = 5
NSAVEMAPS = 10
NBURNIN_ALWAYS_ACCEPT = 10
NBURNIN_FIXTHETA = 20
APHI_GRID = np.linspace(0.5, 1.5, 32)


# spawned workers re-import this module, so the path must be set at import time
if str(REPO_DIR / "src") not in sys.path:
    sys.path.insert(0, str(REPO_DIR / "src"))

from cmblens import FlatGrid, SampleConfig, load_sim_dataset, sample_joint  # noqa: E402


def main() -> None:
    argv = sys.argv[1:]
    out_path = Path(argv[0]) if len(argv) >= 1 else OUT_PATH
    nsamps = int(argv[1]) if len(argv) >= 2 else NSAMPS_PER_CHAIN

    grid = FlatGrid(NX, NX, np.deg2rad(PIXEL_ARCMIN / 60.0))
    sim = load_sim_dataset(grid, seed=SIM_SEED, Aphi=APHI_TRUE, noise_uK_arcmin=NOISE_UK_ARCMIN)
    print(f"[sim] grid={NX}x{NX} pix={PIXEL_ARCMIN}' noise={NOISE_UK_ARCMIN} uK-arcmin", flush=True)

    cfg = SampleConfig(
        nsamps_per_chain=nsamps,
        nchains=NCHAINS,
        nworkers=NWORKERS,
        nchunk=NCHUNK,
        nsavemaps=NSAVEMAPS,
        nburnin_always_accept=NBURNIN_ALWAYS_ACCEPT,
        nburnin_fixtheta=NBURNIN_FIXTHETA,
        theta_range={"Aphi": APHI_GRID},
        progress="summary",
        interruptable=True,
        filename=str(out_path),
        seed=SIM_SEED + 1,
        metadata={"sim_seed": SIM_SEED, "Aphi_true": APHI_TRUE},
    )

    resume = out_path.exists()
    result = sample_joint(sim.ds, cfg, chains=("resume" if resume else None))

    aphi = np.array([[rec["theta"]["Aphi"] for rec in chain[1:]] for chain in result.chains])
    acc = np.array([[bool(rec["accept"]) for rec in chain[1:]] for chain in result.chains])
    burn = min(NBURNIN_FIXTHETA, aphi.shape[1] - 1)
    print(
        f"[done] completed={result.completed}  Aphi={aphi[:, burn:].mean():.3f}"
        f" +- {aphi[:, burn:].std():.3f}  accept={acc.mean():.2f}",
        flush=True,
    )


if __name__ == "__main__":
    main()
