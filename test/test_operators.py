"""
Tests for the lazy operator algebra: diagonal, function, parameter-dependent,
lazy binary and outer-product operators.

Run:
  cd <repo_root>; python -m pytest test/test_operators.py -v
"""
from __future__ import annotations

import numpy as np
import pytest

from cmblens.field import FOURIER, MAP, FlatField, FlatGrid
from cmblens.flat_ops import gradient_ops
from cmblens.operators import (
    BinOp,
    DiagOp,
    FuncOp,
    IdentityOp,
    LazyBinaryOp,
    OuterProdOp,
    ParamDependentOp,
    depends_on,
    evaluate,
    symmetric_funcop,
)

GRID = FlatGrid(8, 8, np.deg2rad(2.0 / 60.0))


def _rand(seed=0) -> FlatField:
    return FlatField(np.random.default_rng(seed).standard_normal(GRID.map_shape), GRID)


def _map_diag(seed=0, offset=0.5) -> DiagOp:
    x = np.random.default_rng(seed).random(GRID.map_shape) + offset
    return DiagOp(FlatField(x, GRID, MAP))


def _fourier_diag(seed=0, offset=0.5) -> DiagOp:
    x = np.random.default_rng(seed).random(GRID.fourier_shape) + offset
    return DiagOp(FlatField(x, GRID, FOURIER))


def _close(a: FlatField, b: FlatField, atol=1e-10):
    np.testing.assert_allclose(a.to_map().data, b.to_map().data, atol=atol)


def _double(f):
    return 2.0 * f


def _half(f):
    return 0.5 * f


def _triple(f):
    return 3.0 * f


def _third(f):
    return f / 3.0


# --- DiagOp ---

def test_diag_inverse_undoes_apply_and_zeroes_singular_modes():
    """D \\ (D v) == v where D != 0; D \\ v is finite even with zero entries."""
    x = np.random.default_rng(0).random(GRID.map_shape) + 0.1
    x[0, 0] = 0.0
    x[3, 5] = 0.0
    D = DiagOp(FlatField(x, GRID, MAP))
    v = _rand(1)

    w = D.apply_inverse(D * v)
    nz = x != 0
    np.testing.assert_allclose(w.data[nz], v.data[nz], rtol=1e-12)
    assert w.data[0, 0] == 0.0 and w.data[3, 5] == 0.0

    u = D.apply_inverse(v)
    assert np.all(np.isfinite(u.data))
    assert u.data[0, 0] == 0.0


def test_diag_converts_argument_to_its_basis():
    """A Fourier DiagOp multiplies the Fourier coefficients of a map argument."""
    D = _fourier_diag(2)
    v = _rand(3)
    out = D * v
    assert out.basis == FOURIER
    np.testing.assert_allclose(out.data, D.diag.data * v.to_fourier().data, atol=1e-12)


def test_same_basis_diags_fold():
    """+, - and * of same-basis DiagOps give a DiagOp; mixed bases stay lazy."""
    A, B = _map_diag(0), _map_diag(1)
    v = _rand(2)
    for op, ref in ((A + B, A * v + B * v), (A - B, A * v - B * v), (A * B, A * (B * v))):
        assert isinstance(op, DiagOp)
        _close(op * v, ref)

    C = _fourier_diag(3)
    lazy = A + C
    assert isinstance(lazy, LazyBinaryOp)
    assert lazy.tag is BinOp.ADD
    _close(lazy * v, A * v + C * v)


def test_diag_simulate():
    """simulate draws with variance diag; negative diagonals are rejected."""
    grid = FlatGrid(64, 64, 1e-3)
    D = DiagOp(FlatField(np.full(grid.map_shape, 4.0), grid))
    s = D.simulate(np.random.default_rng(0)).to_map()
    assert s.data.std() == pytest.approx(2.0, rel=0.1)

    neg = DiagOp(FlatField(-np.ones(grid.map_shape), grid))
    with pytest.raises(ValueError):
        neg.simulate(np.random.default_rng(0))


def test_diag_pinv_and_pseudo_logdet():
    """pinv inverts nonzero entries only; logdet skips zero entries."""
    x = np.full(GRID.map_shape, 2.0)
    x[0, :] = 0.0
    D = DiagOp(FlatField(x, GRID))
    P = D.pinv()
    assert np.all(P.diag.data[0, :] == 0.0)
    assert np.all(P.diag.data[1:, :] == 0.5)
    n_nonzero = int(np.count_nonzero(x))
    assert D.logdet() == pytest.approx(n_nonzero * np.log(2.0))


def test_diag_adjoint_conjugates():
    """Real diagonals are self-adjoint; complex ones conjugate."""
    A = _map_diag(0)
    assert A.adjoint() is A
    dx, _ = gradient_ops(GRID)
    np.testing.assert_allclose(dx.adjoint().diag.data, np.conj(dx.diag.data))
    # complex storage, real values
    W = DiagOp(FlatField(np.full(GRID.fourier_shape, 2.0 + 0.0j), GRID, FOURIER))
    assert W.adjoint() is W


# --- FuncOp ---

def test_funcop_missing_capability_raises():
    """Unset slots raise NotImplementedError naming the capability."""
    op = FuncOp(op=_double)
    v = _rand(0)
    _close(op * v, 2.0 * v)
    with pytest.raises(NotImplementedError, match="not implemented"):
        op.apply_inverse(v)
    with pytest.raises(NotImplementedError, match="not implemented"):
        _ = v * op


def test_funcop_adjoint_and_inverse_swap_slots():
    """adjoint swaps forward/adjoint and inverse/inverse-adjoint; inv swaps forward/inverse."""
    op = FuncOp(_double, _half, _triple, _third)
    adj = op.adjoint()
    assert (adj.op, adj.op_adjoint, adj.op_inverse, adj.op_inverse_adjoint) == (_half, _double, _third, _triple)
    inv = op.inv()
    assert (inv.op, inv.op_adjoint, inv.op_inverse, inv.op_inverse_adjoint) == (_triple, _third, _double, _half)
    assert op.adjoint().adjoint() == op
    assert op.inv().inv() == op
    assert (op ** -1) == inv


def test_identity_op():
    """IdentityOp leaves fields untouched in every direction."""
    v = _rand(0)
    assert IdentityOp * v is v
    assert IdentityOp.apply_inverse(v) is v
    assert v * IdentityOp is v
    assert IdentityOp.adjoint() == IdentityOp


def test_symmetric_funcop():
    """symmetric_funcop is its own adjoint."""
    op = symmetric_funcop(_double, _half)
    assert op.adjoint() == op
    v = _rand(1)
    _close(v * op, op * v)


# --- LazyBinaryOp ---

def test_lazy_sum_and_product_evaluation():
    """(a+b) f == a f + b f; (a*b) f == a (b f)."""
    a = _map_diag(0)
    dx, _ = gradient_ops(GRID)
    v = _rand(1)
    _close((a + dx) * v, a * v + dx * v)
    _close((a - dx) * v, a * v - dx * v)
    _close((a * dx) * v, a * (dx * v))
    F = FuncOp(_double, _double)
    _close((F * dx) * v, F * (dx * v))
    _close((F + a) * v, 2.0 * v + a * v)


def test_lazy_product_inverse_applies_in_reverse_order():
    """(a*c) \\ f == c \\ (a \\ f)."""
    a = _map_diag(0)
    c = _fourier_diag(1)
    A = a * c
    v = _rand(2)
    _close(A.apply_inverse(v), c.apply_inverse(a.apply_inverse(v)))
    _close(A.apply_inverse(A * v), v)


def test_lazy_scalars_powers_and_negation():
    """Scalar products, division, integer powers and negation."""
    a = _map_diag(0)
    v = _rand(1)
    _close((3.0 * a) * v, 3.0 * (a * v))
    _close((a * 3.0) * v, 3.0 * (a * v))
    _close((a / 2.0) * v, 0.5 * (a * v))
    _close((a**2) * v, a * (a * v))
    _close((a**-1) * v, a.apply_inverse(v))
    _close((a**-2) * v, a.apply_inverse(a.apply_inverse(v)))
    _close((-a) * v, -(a * v))
    _close((a + 1.0) * v, a * v + v)
    _close((a**2).apply_inverse(v), a.apply_inverse(a.apply_inverse(v)))
    _close((a / 2.0).apply_inverse(v), 2.0 * a.apply_inverse(v))


def test_lazy_sum_has_no_inverse():
    """Inverting a lazy sum raises NotImplementedError."""
    a = _map_diag(0)
    c = _fourier_diag(1)
    with pytest.raises(NotImplementedError):
        (a + c).apply_inverse(_rand(2))


def test_lazy_adjoint_matches_inner_product():
    """<g, A f> == <A' g, f> and f * A == A' f for a lazy composite."""
    m = _map_diag(0)
    dx, dy = gradient_ops(GRID)
    A = m * dx + 2.0 * dy
    f, g = _rand(1), _rand(2)
    assert g.dot(A * f) == pytest.approx((A.adjoint() * g).dot(f), rel=1e-10)
    _close(g * A, A.adjoint() * g)


def test_lazy_double_adjoint_restores_operator():
    """adjoint(adjoint(op)) == op for lazy trees of function operators."""
    F = FuncOp(_double, _half, _triple, _third)
    G = FuncOp(_half, _double, _third, _triple)
    for op in (F * G, F + G, F - G, F / 2.0, F**3, 2.0 * F):
        assert op.adjoint().adjoint() == op


def test_lazy_node_validation():
    """Operands must be operators or scalars; / takes scalars; ^ takes integers."""
    a = _map_diag(0)
    assert LazyBinaryOp("+", a, a).tag is BinOp.ADD
    with pytest.raises(TypeError):
        LazyBinaryOp("/", a, a)
    with pytest.raises(TypeError):
        LazyBinaryOp("^", a, 0.5)
    with pytest.raises(TypeError):
        LazyBinaryOp("*", 2.0, 3.0)
    with pytest.raises(TypeError):
        _ = a / a
    with pytest.raises(ValueError):
        LazyBinaryOp("%", a, a)


# --- OuterProdOp ---

def test_outer_product_apply():
    """L f == M (M' f)."""
    m = _map_diag(0)
    dx, _ = gradient_ops(GRID)
    M = m * dx + m
    L = OuterProdOp(M)
    v = _rand(1)
    _close(L * v, M * (M.adjoint() * v))
    assert L.adjoint() is L


def test_outer_product_simulate_diag_and_product():
    """Diagonal M draws M w; a lazy product a*b draws a sqrt(b) simulate(b)."""
    m = _map_diag(0)
    s = OuterProdOp(m).simulate(np.random.default_rng(1))
    w = _rand(0).white_noise(np.random.default_rng(1))
    _close(s, m * w)

    a = _map_diag(2)
    b = _fourier_diag(3)
    s = OuterProdOp(a * b).simulate(np.random.default_rng(4))
    expected = a * (b.sqrt() * b.simulate(np.random.default_rng(4)))
    _close(s, expected)


def test_outer_product_simulate_without_diag_raises():
    """Without any diagonal factor there is nothing to draw noise from."""
    with pytest.raises(NotImplementedError):
        OuterProdOp(FuncOp(_double, _double)).simulate(np.random.default_rng(0))


# --- ParamDependentOp ---

def _scaled(A=1.0, B=2.0):
    return DiagOp(FlatField(np.full(GRID.map_shape, A * B), GRID))


def _any_params(**theta):
    return DiagOp(FlatField(np.full(GRID.map_shape, theta.get("A", 1.0)), GRID))


def test_param_dependent_introspects_parameters():
    """Parameter names come from the keyword parameters of the function."""
    L = ParamDependentOp(_scaled)
    assert L.parameters == ["A", "B"]
    assert ParamDependentOp(_scaled, parameters=["A"]).parameters == ["A"]


def test_param_dependent_evaluation_does_not_mutate():
    """Evaluating at theta returns a new operator and leaves the cached one alone."""
    L = ParamDependentOp(_scaled)
    cached = L.op
    v = _rand(0)
    out = L(A=3.0)
    _close(out * v, 6.0 * v)
    assert L.op is cached
    _close(L * v, 2.0 * v)
    _close(evaluate(L, {"A": 0.5}) * v, v)
    assert L.op is cached


def test_param_dependent_empty_theta_matches_default():
    """evaluate(L, {}) behaves like L; unknown parameters are ignored."""
    L = ParamDependentOp(_scaled)
    v = _rand(1)
    _close(evaluate(L, {}) * v, L * v)
    _close(L({"A": 2.0, "C": 9.0}) * v, 4.0 * v)
    K = ParamDependentOp(_any_params)
    _close(K({"A": 5.0, "C": 9.0}) * v, 5.0 * v)


def test_param_dependent_delegates_to_cached_op():
    """inverse, sqrt, adjoint, pinv, logdet, simulate all use the cached op."""
    L = ParamDependentOp(_scaled)
    v = _rand(2)
    _close(L.apply_inverse(v), 0.5 * v)
    _close(L.sqrt() * v, np.sqrt(2.0) * v)
    _close(L.adjoint() * v, 2.0 * v)
    _close(L.inv() * v, 0.5 * v)
    _close(L.pinv() * v, 0.5 * v)
    _close(v * L, 2.0 * v)
    assert L.logdet() == pytest.approx(GRID.n_pix * np.log(2.0))
    assert np.all(L.zero().diag.data == 0.0)
    assert np.all(L.one().diag.data == 1.0)
    s1 = L.simulate(np.random.default_rng(0))
    s2 = L.op.simulate(np.random.default_rng(0))
    _close(s1, s2)


def test_depends_on():
    """depends_on checks declared names; other operators never depend."""
    L = ParamDependentOp(_scaled)
    assert depends_on(L, ["A"])
    assert depends_on(L, {"B": 1.0})
    assert depends_on(L, "A")
    assert not depends_on(L, ["C"])
    D = _map_diag(0)
    assert not depends_on(D, ["A"])
    assert evaluate(D, {"A": 1.0}) is D
