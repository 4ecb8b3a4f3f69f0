"""
Tests for the sparse lensing-matrix builder (CPU and JAX backends).

  python -m pytest test/test_sparse_repr.py -v
"""
from __future__ import annotations

import types

import jax.numpy as jnp
import numpy as np
import pytest

from cmblens import sparse_repr
from cmblens.errors import BackendUnavailable
from cmblens.field import Backend
from cmblens.sparse_repr import build_sparse_repr, row_index_table


def _coords(ny: int, nx: int, amp: float = 1.7, seed: int = 0) -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    ii, jj = np.meshgrid(np.arange(ny, dtype=np.float64), np.arange(nx, dtype=np.float64), indexing="ij")
    return ii + amp * rng.uniform(-1, 1, (ny, nx)), jj + amp * rng.uniform(-1, 1, (ny, nx))


# --- Row table ---

def test_row_index_table_layout_and_memoization():
    k = row_index_table(3, 5)
    assert k.dtype == np.int32
    assert k.shape == (60,)
    np.testing.assert_array_equal(k[:8], [0, 0, 0, 0, 1, 1, 1, 1])
    assert k[-1] == 14
    assert row_index_table(3, 5) is k
    assert not k.flags.writeable


# --- Structure ---

@pytest.mark.parametrize("ny, nx", [(2, 2), (8, 8), (6, 10)])
def test_four_entries_per_row(ny, nx):
    i_def, j_def = _coords(ny, nx)
    rep = build_sparse_repr(i_def, j_def)
    n = ny * nx
    assert rep.mat.shape == (n, n)
    assert rep.nnz == 4 * n
    np.testing.assert_array_equal(np.diff(rep.mat.indptr), 4)
    np.testing.assert_allclose(np.asarray(rep.mat.sum(axis=1)).reshape(-1), 1.0, atol=1e-10)


def test_matches_dense_interpolation():
    """Matrix-vector product equals direct bilinear interpolation of the map."""
    ny, nx = 7, 9
    i_def, j_def = _coords(ny, nx, amp=0.45)
    rng = np.random.default_rng(2)
    m = rng.standard_normal((ny, nx))
    rep = build_sparse_repr(i_def, j_def)
    got = rep.matvec(m.reshape(-1)).reshape(ny, nx)

    i0 = np.floor(i_def).astype(int)
    j0 = np.floor(j_def).astype(int)
    a = i_def - i0
    b = j_def - j0
    expect = (
        (1 - a) * (1 - b) * m[i0 % ny, j0 % nx]
        + a * (1 - b) * m[(i0 + 1) % ny, j0 % nx]
        + (1 - a) * b * m[i0 % ny, (j0 + 1) % nx]
        + a * b * m[(i0 + 1) % ny, (j0 + 1) % nx]
    )
    np.testing.assert_allclose(got, expect, rtol=1e-12, atol=1e-12)


def test_threaded_build_is_identical():
    i_def, j_def = _coords(16, 12, seed=5)
    serial = build_sparse_repr(i_def, j_def, n_threads=1)
    threaded = build_sparse_repr(i_def, j_def, n_threads=4)
    np.testing.assert_array_equal(serial.mat.indptr, threaded.mat.indptr)
    np.testing.assert_array_equal(serial.mat.indices, threaded.mat.indices)
    np.testing.assert_array_equal(serial.mat.data, threaded.mat.data)


def test_transpose_is_adjoint():
    i_def, j_def = _coords(8, 6, seed=7)
    rep = build_sparse_repr(i_def, j_def)
    rng = np.random.default_rng(8)
    a = rng.standard_normal(48)
    b = rng.standard_normal(48)
    assert np.isclose(rep.matvec(a) @ b, a @ rep.rmatvec(b), rtol=1e-12)


# --- GPU backend ---

def test_gpu_build_matches_cpu():
    i_def, j_def = _coords(8, 10, seed=9)
    cpu = build_sparse_repr(i_def, j_def, backend=Backend.CPU)
    gpu = build_sparse_repr(jnp.asarray(i_def), jnp.asarray(j_def), backend=Backend.GPU)
    assert gpu.backend is Backend.GPU
    assert gpu.nnz == cpu.nnz
    np.testing.assert_allclose(gpu.todense(), cpu.todense(), rtol=1e-12, atol=1e-14)

    x = np.random.default_rng(10).standard_normal(80)
    np.testing.assert_allclose(np.asarray(gpu.matvec(jnp.asarray(x))), cpu.matvec(x), rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(np.asarray(gpu.rmatvec(jnp.asarray(x))), cpu.rmatvec(x), rtol=1e-10, atol=1e-12)


def test_relocation_roundtrip():
    i_def, j_def = _coords(6, 6, seed=11)
    cpu = build_sparse_repr(i_def, j_def)
    gpu = cpu.to_backend(Backend.GPU)
    assert gpu.backend is Backend.GPU
    back = gpu.to_backend(Backend.CPU)
    np.testing.assert_allclose(back.todense(), cpu.todense(), rtol=0, atol=0)
    assert cpu.to_backend(Backend.CPU) is cpu


def test_missing_jax_sparse_raises_backend_unavailable(monkeypatch):
    def _fail():
        raise ModuleNotFoundError("No module named 'jax.experimental.sparse'")

    monkeypatch.setattr(sparse_repr, "_import_jax_sparse", _fail)
    i_def, j_def = _coords(4, 4)
    with pytest.raises(BackendUnavailable, match="jax.experimental.sparse"):
        build_sparse_repr(jnp.asarray(i_def), jnp.asarray(j_def), backend=Backend.GPU)


def test_jax_sparse_without_bcsr_raises_backend_unavailable(monkeypatch):
    monkeypatch.setattr(sparse_repr, "_import_jax_sparse", lambda: types.SimpleNamespace(BCOO=object))
    with pytest.raises(BackendUnavailable, match="BCSR"):
        sparse_repr.require_gpu_sparse()
