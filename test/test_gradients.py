"""
Tests for the hand-written reverse-mode rules of the lensing operator.

  python -m pytest test/test_gradients.py -v
"""
from __future__ import annotations

import numpy as np

from cmblens.bilinearlens import BilinearLens, construct_backward, lens_backward, lens_forward
from cmblens.field import FieldTuple, FlatGrid, FlatMap, dot, gradient, gradient_adjoint

N = 64
GRID = FlatGrid(ny=N, nx=N, theta_pix=1.0)
K = 2.0 * np.pi / N  # one period across the map, per pixel
II, JJ = np.meshgrid(np.arange(N, dtype=np.float64), np.arange(N, dtype=np.float64), indexing="ij")


def _amplitude(max_deflection_pix: float) -> float:
    # d_x [A cos(K j)] / dx^2 peaks at A K / dx^2 pixels
    return max_deflection_pix * GRID.dx**2 / K


def _phi0() -> FlatMap:
    return FlatMap(_amplitude(0.3) * (np.cos(K * JJ) + np.sin(K * II)), GRID)


def _psi() -> FlatMap:
    return FlatMap(_amplitude(0.3) * (np.sin(K * JJ) + np.cos(K * II)), GRID)


def _f() -> FlatMap:
    return FlatMap(np.sin(K * JJ) + 0.5 * np.cos(K * II), GRID)


def _rand_map(seed: int) -> FlatMap:
    return FlatMap(np.random.default_rng(seed).standard_normal(GRID.shape), GRID)


# --- Gradient w.r.t. the input field ---

def test_grad_f_is_exact_cotangent():
    """<grad_f, g> == <delta, L g> for any g."""
    L = BilinearLens(_phi0())
    _, ctx = lens_forward(L, _rand_map(0))
    delta, g = _rand_map(1), _rand_map(2)
    _, grad_f = lens_backward(ctx, delta)
    lhs = dot(grad_f, g)
    rhs = dot(delta, L @ g)
    assert abs(lhs - rhs) <= 1e-10 * abs(rhs)


def test_identity_lens_backward_passes_delta_through():
    L = BilinearLens(FlatMap(np.zeros(GRID.shape), GRID))
    f = _f()
    f_lensed, ctx = lens_forward(L, f)
    assert f_lensed is f
    delta = _rand_map(3)
    _, grad_f = lens_backward(ctx, delta)
    assert grad_f is delta


def test_construct_backward_is_pass_through():
    delta = _rand_map(4)
    assert construct_backward(delta) is delta


# --- Gradient w.r.t. phi ---

def test_grad_phi_formula():
    """grad_phi == grad^T (delta * grad(L f))."""
    L = BilinearLens(_phi0())
    f_lensed, ctx = lens_forward(L, _f())
    delta = _rand_map(5)
    grad_phi, _ = lens_backward(ctx, delta)
    g_x, g_y = gradient(f_lensed)
    expect = gradient_adjoint(delta * g_x, delta * g_y)
    np.testing.assert_allclose(grad_phi.arr, expect.arr, rtol=1e-12, atol=1e-12 * np.max(np.abs(expect.arr)))


def test_grad_phi_zero_for_zero_upstream():
    L = BilinearLens(_phi0())
    _, ctx = lens_forward(L, _f())
    grad_phi, _ = lens_backward(ctx, FlatMap(np.zeros(GRID.shape), GRID))
    assert not np.any(grad_phi.arr)


def test_grad_phi_matches_finite_difference():
    """Directional derivative of <1, L(phi) f> along psi, central differences."""
    phi0, psi, f = _phi0(), _psi(), _f()
    delta = FlatMap(np.ones(GRID.shape), GRID)

    L = BilinearLens(phi0)
    _, ctx = lens_forward(L, f)
    grad_phi, _ = lens_backward(ctx, delta)
    analytic = dot(grad_phi, psi)

    eps = 1e-3
    plus = dot(delta, L(phi0 + eps * psi) @ f)
    minus = dot(delta, L(phi0 - eps * psi) @ f)
    numeric = (plus - minus) / (2.0 * eps)

    assert abs(numeric) > 0
    assert abs(analytic - numeric) <= 0.1 * abs(numeric)


def test_grad_phi_sums_over_components_and_planes():
    L = BilinearLens(_phi0())
    f, delta = _f(), _rand_map(6)

    _, ctx = lens_forward(L, f)
    single, _ = lens_backward(ctx, delta)

    _, ctx_t = lens_forward(L, FieldTuple((f, f)))
    pair, grad_f_pair = lens_backward(ctx_t, FieldTuple((delta, delta)))
    np.testing.assert_allclose(pair.arr, 2.0 * single.arr, rtol=1e-10, atol=1e-12 * np.max(np.abs(single.arr)))
    assert isinstance(grad_f_pair, FieldTuple)

    stacked = FlatMap(np.stack([f.arr, f.arr]), GRID)
    _, ctx_b = lens_forward(L, stacked)
    batched, _ = lens_backward(ctx_b, FlatMap(np.stack([delta.arr, delta.arr]), GRID))
    assert batched.arr.shape == GRID.shape
    np.testing.assert_allclose(batched.arr, 2.0 * single.arr, rtol=1e-10, atol=1e-12 * np.max(np.abs(single.arr)))
