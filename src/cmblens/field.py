"""
Flat-sky fields on a regular pixel grid, stored in map or Fourier basis.

Conventions:
  - map data are (nx, ny) real arrays, ix is axis 0 and iy is axis 1
  - Fourier data are (nx, ny//2+1) complex rfft2 coefficients
  - transforms use norm="ortho", so pixel white noise is white per Fourier
    mode and the map-space dot product is basis independent

The operator algebra only relies on the `Field` interface; `FlatField` is the
concrete vector used by the reference dataset and the tests.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass

import numpy as np

MAP = "map"
FOURIER = "fourier"
BASES = (MAP, FOURIER)


@dataclass(frozen=True)
class FlatGrid:
    """
    Regular square-pixel grid.

    Args:
      nx, ny: grid size.
      pixel_res_rad: pixel side in radians.
    """

    nx: int
    ny: int
    pixel_res_rad: float

    def __post_init__(self) -> None:
        if int(self.nx) < 2 or int(self.ny) < 2:
            raise ValueError("FlatGrid needs nx, ny >= 2.")
        if not float(self.pixel_res_rad) > 0.0:
            raise ValueError("pixel_res_rad must be positive.")

    @property
    def map_shape(self) -> tuple[int, int]:
        return (int(self.nx), int(self.ny))

    @property
    def fourier_shape(self) -> tuple[int, int]:
        return (int(self.nx), int(self.ny) // 2 + 1)

    @property
    def n_pix(self) -> int:
        return int(self.nx) * int(self.ny)

    def ell_xy(self) -> tuple[np.ndarray, np.ndarray]:
        """(lx, ly), each broadcast to fourier_shape."""
        dx = float(self.pixel_res_rad)
        lx = 2.0 * np.pi * np.fft.fftfreq(int(self.nx), d=dx)
        ly = 2.0 * np.pi * np.fft.rfftfreq(int(self.ny), d=dx)
        LX, LY = np.meshgrid(lx, ly, indexing="ij")
        return LX, LY

    def ell(self) -> np.ndarray:
        LX, LY = self.ell_xy()
        return np.sqrt(LX * LX + LY * LY)

    def mode_weights(self) -> np.ndarray:
        """
        Multiplicity of each rfft2 coefficient in the full Fourier plane.

        Columns with a conjugate partner outside the half plane count twice;
        the ky=0 column (and the Nyquist column for even ny) count once.
        """
        w = np.full(self.fourier_shape, 2.0, dtype=np.float64)
        w[:, 0] = 1.0
        if int(self.ny) % 2 == 0:
            w[:, -1] = 1.0
        return w


class Field:
    """
    Interface of a vector-space element tagged with a basis.

    Operators only ever call the methods listed here, never inspect data.
    """

    basis: str

    def to_basis(self, basis: str) -> "Field":
        raise NotImplementedError

    def dot(self, other: "Field") -> float:
        raise NotImplementedError

    def white_noise(self, rng: np.random.Generator) -> "Field":
        raise NotImplementedError

    def zeros_like(self) -> "Field":
        raise NotImplementedError

    def sqrt(self) -> "Field":
        raise NotImplementedError

    def conj(self) -> "Field":
        raise NotImplementedError

    def log(self) -> "Field":
        raise NotImplementedError

    def nan2zero(self) -> "Field":
        raise NotImplementedError

    def sum_modes(self) -> float:
        raise NotImplementedError

    def is_nonnegative(self) -> bool:
        raise NotImplementedError

    def is_real(self) -> bool:
        raise NotImplementedError

    def norm(self) -> float:
        return float(np.sqrt(self.dot(self)))


def convert_basis(f: Field, basis: str) -> Field:
    """Express f in `basis` (no-op when already there)."""
    if f.basis == basis:
        return f
    return f.to_basis(basis)


def nan2zero(x):
    """Replace every non-finite entry of a field or array with zero."""
    if isinstance(x, Field):
        return x.nan2zero()
    x = np.asarray(x)
    return np.where(np.isfinite(x), x, 0)


def _is_scalar(x) -> bool:
    return isinstance(x, numbers.Number) or (isinstance(x, np.ndarray) and x.ndim == 0)


class FlatField(Field):
    """
    Field on a FlatGrid.

    Arithmetic between two fields converts the right operand into the left
    operand's basis; products and quotients are elementwise in that basis.
    """

    # numpy scalars defer to our reflected operators
    __array_ufunc__ = None

    def __init__(self, data, grid: FlatGrid, basis: str = MAP):
        if basis not in BASES:
            raise ValueError(f"Unknown basis: {basis}")
        data = np.asarray(data)
        data = data.astype(np.result_type(data.dtype, np.float64), copy=False)
        expected = grid.map_shape if basis == MAP else grid.fourier_shape
        if data.shape != expected:
            raise ValueError(f"{basis} data must have shape {expected}, got {data.shape}.")
        self.data = data
        self.grid = grid
        self.basis = basis

    # --- constructors ---

    @classmethod
    def zeros(cls, grid: FlatGrid, basis: str = MAP) -> "FlatField":
        shape = grid.map_shape if basis == MAP else grid.fourier_shape
        dtype = np.float64 if basis == MAP else np.complex128
        return cls(np.zeros(shape, dtype=dtype), grid, basis)

    def zeros_like(self) -> "FlatField":
        return FlatField(np.zeros_like(self.data), self.grid, self.basis)

    def white_noise(self, rng: np.random.Generator) -> "FlatField":
        """Unit-variance pixel white noise on the same grid (map basis)."""
        return FlatField(rng.standard_normal(self.grid.map_shape), self.grid, MAP)

    def copy(self) -> "FlatField":
        return FlatField(self.data.copy(), self.grid, self.basis)

    # --- basis conversion ---

    def to_basis(self, basis: str) -> "FlatField":
        if basis == self.basis:
            return self
        if basis == FOURIER:
            return FlatField(np.fft.rfft2(self.data, norm="ortho"), self.grid, FOURIER)
        if basis == MAP:
            x = np.fft.irfft2(self.data, s=self.grid.map_shape, norm="ortho")
            return FlatField(x, self.grid, MAP)
        raise ValueError(f"Unknown basis: {basis}")

    def to_map(self) -> "FlatField":
        return self.to_basis(MAP)

    def to_fourier(self) -> "FlatField":
        return self.to_basis(FOURIER)

    # --- arithmetic ---

    def _operand(self, other):
        if isinstance(other, FlatField):
            if other.grid != self.grid:
                raise ValueError("Fields live on different grids.")
            return other.to_basis(self.basis).data
        if _is_scalar(other):
            return other
        return None

    def _binary(self, other, fn):
        y = self._operand(other)
        if y is None:
            return NotImplemented
        return FlatField(fn(self.data, y), self.grid, self.basis)

    def _rbinary(self, other, fn):
        y = self._operand(other)
        if y is None:
            return NotImplemented
        return FlatField(fn(y, self.data), self.grid, self.basis)

    def __add__(self, other):
        return self._binary(other, np.add)

    def __radd__(self, other):
        return self._rbinary(other, np.add)

    def __sub__(self, other):
        return self._binary(other, np.subtract)

    def __rsub__(self, other):
        return self._rbinary(other, np.subtract)

    def __mul__(self, other):
        return self._binary(other, np.multiply)

    def __rmul__(self, other):
        return self._rbinary(other, np.multiply)

    def __truediv__(self, other):
        with np.errstate(divide="ignore", invalid="ignore"):
            return self._binary(other, np.divide)

    def __rtruediv__(self, other):
        with np.errstate(divide="ignore", invalid="ignore"):
            return self._rbinary(other, np.divide)

    def __neg__(self) -> "FlatField":
        return FlatField(-self.data, self.grid, self.basis)

    def __pos__(self) -> "FlatField":
        return self

    # --- elementwise ---

    def sqrt(self) -> "FlatField":
        return FlatField(np.sqrt(self.data), self.grid, self.basis)

    def conj(self) -> "FlatField":
        return FlatField(np.conj(self.data), self.grid, self.basis)

    def log(self) -> "FlatField":
        with np.errstate(divide="ignore", invalid="ignore"):
            return FlatField(np.log(self.data), self.grid, self.basis)

    def nan2zero(self) -> "FlatField":
        return FlatField(np.where(np.isfinite(self.data), self.data, 0), self.grid, self.basis)

    # --- reductions ---

    def dot(self, other: "FlatField") -> float:
        """Real inner product, evaluated in map space."""
        if not isinstance(other, FlatField):
            raise TypeError("dot expects a FlatField.")
        if other.grid != self.grid:
            raise ValueError("Fields live on different grids.")
        a = self.to_map().data
        b = other.to_map().data
        return float(np.real(np.vdot(a, b)))

    def sum_modes(self) -> float:
        """
        Sum of the entries viewed as an operator diagonal, over the full plane.

        In Fourier basis each rfft2 coefficient is weighted by its multiplicity.
        """
        if self.basis == MAP:
            return float(np.real(np.sum(self.data)))
        return float(np.real(np.sum(self.grid.mode_weights() * self.data)))

    def is_nonnegative(self) -> bool:
        return bool(np.all(np.real(self.data) >= 0.0) and np.all(np.imag(self.data) == 0.0))

    def is_real(self) -> bool:
        return not np.iscomplexobj(self.data) or bool(np.all(np.imag(self.data) == 0.0))

    def __repr__(self) -> str:
        return f"FlatField(basis={self.basis!r}, shape={self.data.shape}, grid={self.grid})"
