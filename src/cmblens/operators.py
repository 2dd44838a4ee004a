"""
Lazy linear operators acting on fields.

Operators are applied to fields (`op * f`, `op.apply(f)`), inverted against
them (`op.apply_inverse(f)`, the `op \\ f` of the math) and combined with each
other or with scalars into lazy trees that are only evaluated when applied:

    A = Cf ** -1 + L.adjoint() * Cn ** -1 * L
    A * f  ==  Cf \\ f + L' (Cn \\ (L f))

Nothing here ever forms a dense matrix.
"""

from __future__ import annotations

import inspect
import numbers
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .field import Field, convert_basis, nan2zero


def _is_scalar(x) -> bool:
    return isinstance(x, numbers.Number) and not isinstance(x, bool)


def _is_operand(x) -> bool:
    return isinstance(x, ImplicitOp) or _is_scalar(x)


def _apply(a, f: Field) -> Field:
    return a * f if _is_scalar(a) else a.apply(f)


def _apply_inverse(a, f: Field) -> Field:
    return f / a if _is_scalar(a) else a.apply_inverse(f)


def _adjoint(a):
    return a.conjugate() if _is_scalar(a) else a.adjoint()


class ImplicitOp:
    """
    Base class: a linear map over fields, never materialized.

    Subclasses implement whichever of `apply`, `apply_inverse`,
    `apply_adjoint_left`, `adjoint`, `sqrt`, `simulate`, `logdet` they can;
    the rest raise NotImplementedError naming the missing capability.
    """

    # numpy scalars defer to our reflected operators
    __array_ufunc__ = None

    def apply(self, f: Field) -> Field:
        raise NotImplementedError(f"op*f not implemented for {type(self).__name__}.")

    def apply_inverse(self, f: Field) -> Field:
        raise NotImplementedError(f"op\\f not implemented for {type(self).__name__}.")

    def apply_adjoint_left(self, f: Field) -> Field:
        """f * op, i.e. op' * f."""
        return self.adjoint().apply(f)

    def adjoint(self) -> "ImplicitOp":
        raise NotImplementedError(f"adjoint not implemented for {type(self).__name__}.")

    def inv(self) -> "ImplicitOp":
        return LazyBinaryOp(BinOp.POW, self, -1)

    def sqrt(self) -> "ImplicitOp":
        raise NotImplementedError(f"sqrt not implemented for {type(self).__name__}.")

    def simulate(self, rng: np.random.Generator) -> Field:
        raise NotImplementedError(f"simulate not implemented for {type(self).__name__}.")

    def logdet(self) -> float:
        raise NotImplementedError(f"logdet not implemented for {type(self).__name__}.")

    @property
    def H(self) -> "ImplicitOp":
        return self.adjoint()

    # --- lazy algebra ---

    def __mul__(self, other):
        if isinstance(other, Field):
            return self.apply(other)
        if _is_operand(other):
            return _combine(BinOp.MUL, self, other)
        return NotImplemented

    def __rmul__(self, other):
        if isinstance(other, Field):
            return self.apply_adjoint_left(other)
        if _is_scalar(other):
            return _combine(BinOp.MUL, other, self)
        return NotImplemented

    def __add__(self, other):
        if _is_operand(other):
            return _combine(BinOp.ADD, self, other)
        return NotImplemented

    def __radd__(self, other):
        if _is_scalar(other):
            return _combine(BinOp.ADD, other, self)
        return NotImplemented

    def __sub__(self, other):
        if _is_operand(other):
            return _combine(BinOp.SUB, self, other)
        return NotImplemented

    def __rsub__(self, other):
        if _is_scalar(other):
            return _combine(BinOp.SUB, other, self)
        return NotImplemented

    def __truediv__(self, other):
        if _is_scalar(other):
            return LazyBinaryOp(BinOp.DIV, self, other)
        return NotImplemented

    def __pow__(self, n):
        if not isinstance(n, numbers.Integral) or isinstance(n, bool):
            return NotImplemented
        if n == -1:
            return self.inv()
        return LazyBinaryOp(BinOp.POW, self, int(n))

    def __neg__(self):
        return _combine(BinOp.MUL, -1, self)


### Diagonal ops


class DiagOp(ImplicitOp):
    """
    Operator diagonal in the basis of its `diag` field.

    Applying converts the argument into that basis first. Division zeroes
    every non-finite entry (masked or singular modes), whatever caused it.
    """

    def __init__(self, diag: Field):
        if not isinstance(diag, Field):
            raise TypeError("DiagOp expects a Field holding the diagonal.")
        self.diag = diag

    @property
    def basis(self) -> str:
        return self.diag.basis

    def apply(self, f: Field) -> Field:
        return self.diag * convert_basis(f, self.basis)

    def apply_inverse(self, f: Field) -> Field:
        return nan2zero(convert_basis(f, self.basis) / self.diag)

    def adjoint(self) -> "DiagOp":
        if self.diag.is_real():
            return self
        return DiagOp(self.diag.conj())

    def sqrt(self) -> "DiagOp":
        return DiagOp(self.diag.sqrt())

    def pinv(self) -> "DiagOp":
        return DiagOp(nan2zero(1.0 / self.diag))

    def logdet(self) -> float:
        # pseudo-determinant: zero modes are skipped, like the inverse
        return self.diag.log().nan2zero().sum_modes()

    def simulate(self, rng: np.random.Generator) -> Field:
        if not self.diag.is_nonnegative():
            raise ValueError("simulate requires a non-negative diagonal.")
        return self.sqrt().apply(self.diag.white_noise(rng))

    def zero(self) -> "DiagOp":
        return DiagOp(self.diag.zeros_like())

    def one(self) -> "DiagOp":
        return DiagOp(self.diag.zeros_like() + 1.0)

    def __repr__(self) -> str:
        return f"DiagOp({self.diag!r})"


### FuncOp


@dataclass(frozen=True)
class FuncOp(ImplicitOp):
    """
    Operator defined by up to four functions of a field.

    Capabilities whose function is None raise NotImplementedError.
    """

    op: Optional[Callable[[Field], Field]] = None
    op_adjoint: Optional[Callable[[Field], Field]] = None
    op_inverse: Optional[Callable[[Field], Field]] = None
    op_inverse_adjoint: Optional[Callable[[Field], Field]] = None

    def apply(self, f: Field) -> Field:
        if self.op is None:
            raise NotImplementedError("op*f not implemented (FuncOp has no forward function).")
        return self.op(f)

    def apply_adjoint_left(self, f: Field) -> Field:
        if self.op_adjoint is None:
            raise NotImplementedError("f*op not implemented (FuncOp has no adjoint function).")
        return self.op_adjoint(f)

    def apply_inverse(self, f: Field) -> Field:
        if self.op_inverse is None:
            raise NotImplementedError("op\\f not implemented (FuncOp has no inverse function).")
        return self.op_inverse(f)

    def adjoint(self) -> "FuncOp":
        return FuncOp(self.op_adjoint, self.op, self.op_inverse_adjoint, self.op_inverse)

    def inv(self) -> "FuncOp":
        return FuncOp(self.op_inverse, self.op_inverse_adjoint, self.op, self.op_adjoint)


def symmetric_funcop(op=None, op_inverse=None) -> FuncOp:
    """Self-adjoint FuncOp."""
    return FuncOp(op, op, op_inverse, op_inverse)


def _identity(f):
    return f


IdentityOp = FuncOp(_identity, _identity, _identity, _identity)


### ParamDependentOp


def _keyword_parameters(fn: Callable) -> tuple[list[str], bool]:
    params = inspect.signature(fn).parameters.values()
    names = [
        p.name
        for p in params
        if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY) and p.default is not p.empty
    ]
    takes_any = any(p.kind == p.VAR_KEYWORD for p in params)
    return names, takes_any


class ParamDependentOp(ImplicitOp):
    """
    Operator which depends on parameters theta.

    `L(theta)` (or `L(**theta)`) recomputes a fresh operator; used as-is, L
    behaves as the fiducial operator `recompute_function()` cached at
    construction. Parameter names are read from the function's keyword
    parameters unless given.
    """

    def __init__(self, recompute_function: Callable[..., ImplicitOp], parameters=None):
        names, takes_any = _keyword_parameters(recompute_function)
        self.recompute_function = recompute_function
        self.parameters = list(parameters) if parameters is not None else names
        self._takes_any = takes_any
        self.op = recompute_function()

    def __call__(self, theta: Mapping | None = None, **kwargs) -> ImplicitOp:
        theta = {**(theta or {}), **kwargs}
        if not self._takes_any:
            theta = {k: v for k, v in theta.items() if k in self.parameters}
        return self.recompute_function(**theta)

    def apply(self, f: Field) -> Field:
        return self.op.apply(f)

    def apply_inverse(self, f: Field) -> Field:
        return self.op.apply_inverse(f)

    def apply_adjoint_left(self, f: Field) -> Field:
        return self.op.apply_adjoint_left(f)

    def adjoint(self) -> ImplicitOp:
        return self.op.adjoint()

    def inv(self) -> ImplicitOp:
        return self.op.inv()

    def sqrt(self) -> ImplicitOp:
        return self.op.sqrt()

    def pinv(self) -> ImplicitOp:
        return self.op.pinv()

    def simulate(self, rng: np.random.Generator) -> Field:
        return self.op.simulate(rng)

    def logdet(self) -> float:
        return self.op.logdet()

    def zero(self) -> ImplicitOp:
        return self.op.zero()

    def one(self) -> ImplicitOp:
        return self.op.one()

    def __repr__(self) -> str:
        return f"ParamDependentOp(parameters={self.parameters}, op={self.op!r})"


def evaluate(L, theta: Mapping | None = None, **kwargs):
    """L at theta for parameter-dependent operators, else L itself."""
    if isinstance(L, ParamDependentOp):
        return L(theta, **kwargs)
    return L


def depends_on(L, theta) -> bool:
    """Whether L depends on any of the parameter names in theta (names or a mapping)."""
    if not isinstance(L, ParamDependentOp):
        return False
    names = {theta} if isinstance(theta, str) else set(theta)
    return any(p in names for p in L.parameters)


### LazyBinaryOp


class BinOp(str, Enum):
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    POW = "^"


_DIAG_FOLD = {
    BinOp.ADD: lambda x, y: x + y,
    BinOp.SUB: lambda x, y: x - y,
    BinOp.MUL: lambda x, y: x * y,
}


def _combine(tag: BinOp, a, b) -> ImplicitOp:
    if isinstance(a, DiagOp) and isinstance(b, DiagOp) and a.basis == b.basis and tag in _DIAG_FOLD:
        return DiagOp(_DIAG_FOLD[tag](a.diag, b.diag))
    return LazyBinaryOp(tag, a, b)


@dataclass(frozen=True)
class LazyBinaryOp(ImplicitOp):
    """
    Deferred `a (+ - * / ^) b` of operators and scalars.

    Nodes are immutable and only wrap operands built before them, so every
    tree is finite.
    """

    tag: BinOp
    a: object
    b: object

    def __post_init__(self) -> None:
        object.__setattr__(self, "tag", BinOp(self.tag))
        if not (_is_operand(self.a) and _is_operand(self.b)):
            raise TypeError("LazyBinaryOp operands must be operators or scalars.")
        if not (isinstance(self.a, ImplicitOp) or isinstance(self.b, ImplicitOp)):
            raise TypeError("LazyBinaryOp needs at least one operator operand.")
        if self.tag is BinOp.DIV and not _is_scalar(self.b):
            raise TypeError("Operators can only be divided by scalars.")
        if self.tag is BinOp.POW and not isinstance(self.b, numbers.Integral):
            raise TypeError("Operator powers must be integers.")

    def apply(self, f: Field) -> Field:
        a, b = self.a, self.b
        if self.tag is BinOp.ADD:
            return _apply(a, f) + _apply(b, f)
        if self.tag is BinOp.SUB:
            return _apply(a, f) - _apply(b, f)
        if self.tag is BinOp.DIV:
            return _apply(a, f) / b
        if self.tag is BinOp.MUL:
            return _apply(a, _apply(b, f))
        step = _apply if b > 0 else _apply_inverse
        for _ in range(abs(int(b))):
            f = step(a, f)
        return f

    def apply_inverse(self, f: Field) -> Field:
        a, b = self.a, self.b
        if self.tag is BinOp.MUL:
            return _apply_inverse(b, _apply_inverse(a, f))
        if self.tag is BinOp.DIV:
            return _apply_inverse(a, f) * b
        if self.tag is BinOp.POW:
            step = _apply_inverse if b > 0 else _apply
            for _ in range(abs(int(b))):
                f = step(a, f)
            return f
        raise NotImplementedError(f"op\\f not implemented for a lazy '{self.tag.value}' of operators.")

    def adjoint(self) -> "LazyBinaryOp":
        # (ab)' = b'a' and (a+b)' = b'+a'; the other tags keep their operand order
        if self.tag in (BinOp.MUL, BinOp.ADD):
            return LazyBinaryOp(self.tag, _adjoint(self.b), _adjoint(self.a))
        if self.tag is BinOp.POW:
            return LazyBinaryOp(self.tag, _adjoint(self.a), self.b)
        return LazyBinaryOp(self.tag, _adjoint(self.a), _adjoint(self.b))


### OuterProdOp


def _diag_leaf(op) -> Optional[DiagOp]:
    if isinstance(op, DiagOp):
        return op
    if isinstance(op, ParamDependentOp):
        return _diag_leaf(op.op)
    if isinstance(op, OuterProdOp):
        return _diag_leaf(op.M)
    if isinstance(op, LazyBinaryOp):
        for x in (op.a, op.b):
            leaf = _diag_leaf(x)
            if leaf is not None:
                return leaf
    return None


@dataclass(frozen=True)
class OuterProdOp(ImplicitOp):
    """L = M M'. Simulating draws M w directly, without forming L."""

    M: ImplicitOp

    def apply(self, f: Field) -> Field:
        return self.M.apply(self.M.adjoint().apply(f))

    def apply_inverse(self, f: Field) -> Field:
        return self.M.adjoint().apply_inverse(self.M.apply_inverse(f))

    def adjoint(self) -> "OuterProdOp":
        return self

    def simulate(self, rng: np.random.Generator) -> Field:
        M = self.M
        if isinstance(M, DiagOp):
            return M.apply(M.diag.white_noise(rng))
        if isinstance(M, LazyBinaryOp) and M.tag is BinOp.MUL and isinstance(M.b, ImplicitOp):
            return _apply(M.a, M.b.sqrt().apply(M.b.simulate(rng)))
        leaf = _diag_leaf(M)
        if leaf is None:
            raise NotImplementedError("simulate not implemented for an OuterProdOp without a diagonal factor.")
        return M.apply(leaf.diag.white_noise(rng))
