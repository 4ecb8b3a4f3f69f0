"""
Sparse N x N representation of a bilinear remap (N = ny * nx).

Row I holds the 4 bilinear weights of output pixel I, so the matrix has
exactly 4N stored entries. Triplets (K, M, V) are laid out in 4 contiguous
slots per row:

  K[4I:4I+4] = I                         (row table, memoized per grid shape)
  M[4I:4I+4], V[4I:4I+4] = kernel(I)     (corner columns, weights)

and converted to compressed-row form.

Backends:
  - CPU: scipy.sparse CSR; the kernel runs vectorized over pixels, split
    across `n_threads` disjoint chunks when requested.
  - GPU: jax.experimental.sparse; the kernel is `jax.vmap`-ed over pixels
    (one lane per output pixel) and jit-compiled. Forward products use BCSR,
    adjoint products a BCOO holding the transposed triplets.

Pixels are independent, so chunk order and thread interleaving do not
change the result.
"""

from __future__ import annotations

import functools
import importlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np
import scipy.sparse as sp

from .errors import BackendUnavailable
from .field import Backend
from .kernel import corner_indices_and_weights


@functools.lru_cache(maxsize=None)
def row_index_table(ny: int, nx: int) -> np.ndarray:
    """(4*ny*nx,) int32 read-only table with K[4I:4I+4] = I."""
    k = np.repeat(np.arange(int(ny) * int(nx), dtype=np.int32), 4)
    k.setflags(write=False)
    return k


def _import_jax_sparse():
    return importlib.import_module("jax.experimental.sparse")


def require_gpu_sparse():
    """Return `jax.experimental.sparse`, or raise BackendUnavailable."""
    try:
        jsparse = _import_jax_sparse()
    except ImportError as err:
        raise BackendUnavailable(
            "GPU lensing needs jax.experimental.sparse, which failed to import. "
            "Install a jax build that ships it (pip install -U jax) or keep the deflection field on the CPU."
        ) from err
    missing = [name for name in ("BCSR", "BCOO") if not hasattr(jsparse, name)]
    if missing:
        raise BackendUnavailable(
            f"GPU lensing needs jax.experimental.sparse.{'/'.join(missing)}, which this jax version lacks. "
            "Upgrade jax (pip install -U jax) or keep the deflection field on the CPU."
        )
    return jsparse


@dataclass(frozen=True)
class SparseRepr:
    """
    Forward matrix plus its transpose on one backend.

    matvec/rmatvec accept (n_pix,) vectors or (n_pix, k) column stacks.
    """

    backend: Backend
    n_pix: int
    mat: Any
    mat_t: Any

    @property
    def nnz(self) -> int:
        if self.backend is Backend.CPU:
            return int(self.mat.nnz)
        return int(self.mat.nse)

    def matvec(self, x):
        return self.mat @ x

    def rmatvec(self, x):
        return self.mat_t @ x

    def to_csr_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Host copies of (data, indices, indptr)."""
        return (
            np.asarray(self.mat.data),
            np.asarray(self.mat.indices, dtype=np.int32),
            np.asarray(self.mat.indptr, dtype=np.int32),
        )

    def todense(self) -> np.ndarray:
        if self.backend is Backend.CPU:
            return self.mat.toarray()
        return np.asarray(self.mat.todense())

    def to_backend(self, backend: Backend) -> SparseRepr:
        backend = Backend(backend)
        if backend is self.backend:
            return self
        data, indices, indptr = self.to_csr_arrays()
        if backend is Backend.GPU:
            return _gpu_repr(jnp.asarray(data), jnp.asarray(indices), jnp.asarray(indptr), self.n_pix)
        return _cpu_repr(sp.csr_matrix((data, indices, indptr), shape=(self.n_pix, self.n_pix)))


def _cpu_repr(mat: sp.csr_matrix) -> SparseRepr:
    return SparseRepr(backend=Backend.CPU, n_pix=int(mat.shape[0]), mat=mat, mat_t=mat.T.tocsr())


def _gpu_repr(data, indices, indptr, n_pix: int) -> SparseRepr:
    jsparse = require_gpu_sparse()
    n_pix = int(n_pix)
    mat = jsparse.BCSR((data, indices, indptr), shape=(n_pix, n_pix))
    rows = jnp.repeat(jnp.arange(n_pix, dtype=jnp.int32), jnp.diff(indptr), total_repeat_length=int(data.shape[0]))
    mat_t = jsparse.BCOO((data, jnp.stack([indices, rows], axis=1)), shape=(n_pix, n_pix))
    return SparseRepr(backend=Backend.GPU, n_pix=n_pix, mat=mat, mat_t=mat_t)


def _build_cpu(i_def: np.ndarray, j_def: np.ndarray, ny: int, nx: int, n_threads: int) -> SparseRepr:
    n_pix = ny * nx
    K = row_index_table(ny, nx)
    M = np.empty(K.shape, dtype=np.int32)
    V = np.empty(K.shape, dtype=np.float64)

    def fill(start: int, stop: int) -> None:
        idx4, w4 = corner_indices_and_weights(i_def[start:stop], j_def[start:stop], ny, nx)
        M[4 * start : 4 * stop] = idx4.reshape(-1)
        V[4 * start : 4 * stop] = w4.reshape(-1)

    if n_threads <= 1:
        fill(0, n_pix)
    else:
        bounds = np.linspace(0, n_pix, int(n_threads) + 1).astype(np.int64)
        with ThreadPoolExecutor(max_workers=int(n_threads)) as pool:
            futures = [pool.submit(fill, int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:], strict=True)]
            for fut in futures:
                fut.result()

    mat = sp.coo_matrix((V, (K, M)), shape=(n_pix, n_pix)).tocsr()
    return _cpu_repr(mat)


@functools.lru_cache(maxsize=None)
def _gpu_kernel(ny: int, nx: int):
    def one_pixel(i_def, j_def):
        return corner_indices_and_weights(i_def, j_def, ny, nx, xp=jnp)

    return jax.jit(jax.vmap(one_pixel))


def _build_gpu(i_def, j_def, ny: int, nx: int) -> SparseRepr:
    require_gpu_sparse()
    n_pix = ny * nx
    idx4, w4 = _gpu_kernel(ny, nx)(jnp.asarray(i_def, dtype=jnp.float64), jnp.asarray(j_def, dtype=jnp.float64))
    data = jnp.reshape(w4, (-1,))
    indices = jnp.reshape(idx4, (-1,)).astype(jnp.int32)
    indptr = jnp.arange(0, 4 * n_pix + 1, 4, dtype=jnp.int32)
    return _gpu_repr(data, indices, indptr, n_pix)


def build_sparse_repr(
    i_def,
    j_def,
    *,
    backend: Backend = Backend.CPU,
    n_threads: int = 1,
) -> SparseRepr:
    """
    Build the lensing matrix from deflected coordinates.

    Args:
      i_def, j_def: (ny, nx) fractional row/column coordinates (pixel units)
        that each output pixel samples the source map at.
      backend: where to build and store the matrix.
      n_threads: CPU worker threads (ignored on GPU).

    Returns:
      SparseRepr with 4 stored entries per row.
    """
    backend = Backend(backend)
    if tuple(i_def.shape) != tuple(j_def.shape) or len(i_def.shape) != 2:
        raise ValueError("i_def and j_def must be same-shaped 2D arrays (ny, nx).")
    ny, nx = int(i_def.shape[0]), int(i_def.shape[1])
    if backend is Backend.GPU:
        return _build_gpu(jnp.reshape(i_def, (-1,)), jnp.reshape(j_def, (-1,)), ny, nx)
    i_flat = np.asarray(i_def, dtype=np.float64).reshape(-1)
    j_flat = np.asarray(j_def, dtype=np.float64).reshape(-1)
    return _build_cpu(i_flat, j_flat, ny, nx, int(n_threads))
