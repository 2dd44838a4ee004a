"""
cmblens: Bayesian CMB lensing reconstruction on the flat sky.

The main public entry points are:
  - the lazy operator algebra (`DiagOp`, `FuncOp`, `ParamDependentOp`, ...)
  - `sample_joint` (Gibbs + HMC sampling of f, phi, theta)
  - `load_sim_dataset` (simulated flat-sky lensing data)
"""

from .chains_io import load_chains, load_rundat, save_chains
from .field import FOURIER, MAP, Field, FlatField, FlatGrid, convert_basis, nan2zero
from .flat_dataset import DataSet, FlatDataSet, SimDataSet, load_sim_dataset
from .grid_sample import GridSample, InterpolatedLogPDF, grid_and_sample
from .hmc import symplectic_integrate
from .lensing import NoLens, TaylorLens
from .operators import (
    BinOp,
    DiagOp,
    FuncOp,
    IdentityOp,
    ImplicitOp,
    LazyBinaryOp,
    OuterProdOp,
    ParamDependentOp,
    depends_on,
    evaluate,
    symmetric_funcop,
)
from .sampling import CancelToken, SampleConfig, SampleResult, sample_joint

__all__ = [
    "MAP",
    "FOURIER",
    "Field",
    "FlatField",
    "FlatGrid",
    "convert_basis",
    "nan2zero",
    "ImplicitOp",
    "DiagOp",
    "FuncOp",
    "IdentityOp",
    "symmetric_funcop",
    "ParamDependentOp",
    "evaluate",
    "depends_on",
    "BinOp",
    "LazyBinaryOp",
    "OuterProdOp",
    "TaylorLens",
    "NoLens",
    "DataSet",
    "FlatDataSet",
    "SimDataSet",
    "load_sim_dataset",
    "symplectic_integrate",
    "GridSample",
    "InterpolatedLogPDF",
    "grid_and_sample",
    "SampleConfig",
    "SampleResult",
    "CancelToken",
    "sample_joint",
    "save_chains",
    "load_chains",
    "load_rundat",
]
