"""
Chain checkpoint files.

A checkpoint is one .npz holding two pickled object arrays:
  chains: (nchains,) object array, each entry a list of record dicts
  rundat: 0-d object array wrapping the run configuration dict
Only `chains` is needed to resume.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import numpy as np


def swap_path(path: Path) -> Path:
    """Sibling `.swap.<name>` used for atomic writes."""
    path = Path(path)
    return path.parent / f".swap.{path.name}"


def save_chains(path: Path, chains: list[list[dict]], rundat: Optional[dict] = None) -> Path:
    """
    Write chains (and the run configuration) to `path` atomically.

    The file is written to the swap path first and moved into place, so an
    interrupted write never leaves a truncated checkpoint behind.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    arr = np.empty(len(chains), dtype=object)
    for k, chain in enumerate(chains):
        arr[k] = list(chain)
    payload = dict(chains=arr, rundat=np.array(rundat if rundat is not None else {}, dtype=object))

    tmp = swap_path(path)
    with open(tmp, "wb") as fh:
        np.savez_compressed(fh, **payload)
    os.replace(tmp, path)
    return path


def load_chains(path: Path) -> list[list[dict]]:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"No chain file at {path}.")
    with np.load(path, allow_pickle=True) as z:
        if "chains" not in z.files:
            raise ValueError(f"{path} has no 'chains' entry.")
        return [list(chain) for chain in z["chains"]]


def load_rundat(path: Path) -> dict:
    with np.load(Path(path), allow_pickle=True) as z:
        if "rundat" not in z.files:
            return {}
        return dict(z["rundat"].item())
