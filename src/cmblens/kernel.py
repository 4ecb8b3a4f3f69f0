"""
Per-pixel bilinear index/weight kernel with periodic wrap (no I/O, no state).

For output pixel I deflected to the fractional coordinate (i_def, j_def)
(row, column; pixel units) we bilinear-interpolate the source map from the
4 corners of the enclosing cell:

  left  = floor(i_def),  right  = left + 1      (rows)
  top   = floor(j_def),  bottom = top + 1       (columns)

Corner order is (left,top), (right,top), (left,bottom), (right,bottom), and

  (L m)[I] = sum_{k=0..3} w4[I,k] * m[idx4[I,k]]

Corners are wrapped modulo the grid extent and flattened as i * nx + j.

The weights are the first row of the inverse of the 4x4 system that fits
the bilinear basis {1, di, dj, di*dj} through the corners, with the corner
offsets taken relative to the target point:

  di-, di+ = left - i_def, right - i_def
  dj-, dj+ = top - j_def,  bottom - j_def

Its closed form is

  w4 = [di+ dj+, -di- dj+, -di+ dj-, di- dj-] / ((di+ - di-) (dj+ - dj-))

The same functions run on numpy arrays (vectorized over pixels) and on
scalar JAX tracers under `jax.vmap`, so both backends do identical
arithmetic.
"""

from __future__ import annotations

import numpy as np


def wrap_index(i, n: int, xp=np):
    """Periodic wrap into [0, n): -1 -> n-1, n -> 0."""
    return xp.mod(i, n)


def sub2ind(i, j, ny: int, nx: int, xp=np):
    """Flat C-order index of the wrapped (row, column) pair."""
    return wrap_index(i, ny, xp) * nx + wrap_index(j, nx, xp)


def bilinear_system(di_minus: float, di_plus: float, dj_minus: float, dj_plus: float) -> np.ndarray:
    """
    4x4 matrix of the bilinear basis {1, di, dj, di*dj} at the four corners.

    Row order matches the corner order. `np.linalg.inv(A)[0]` equals the
    weights from `bilinear_weights`.
    """
    return np.array(
        [
            [1.0, di_minus, dj_minus, di_minus * dj_minus],
            [1.0, di_plus, dj_minus, di_plus * dj_minus],
            [1.0, di_minus, dj_plus, di_minus * dj_plus],
            [1.0, di_plus, dj_plus, di_plus * dj_plus],
        ],
        dtype=np.float64,
    )


def bilinear_weights(di_minus, di_plus, dj_minus, dj_plus, xp=np):
    """Closed-form first row of inv(bilinear_system(...)); last axis has 4 entries."""
    norm = (di_plus - di_minus) * (dj_plus - dj_minus)
    return xp.stack(
        [
            di_plus * dj_plus / norm,
            -di_minus * dj_plus / norm,
            -di_plus * dj_minus / norm,
            di_minus * dj_minus / norm,
        ],
        axis=-1,
    )


def corner_indices_and_weights(i_def, j_def, ny: int, nx: int, xp=np):
    """
    Corner indices and bilinear weights for deflected coordinates.

    Args:
      i_def, j_def: same-shaped fractional row/column coordinates (pixel units).
        Any real value is allowed; corners are wrapped periodically.
      ny, nx: grid shape.
      xp: numpy or jax.numpy.

    Returns:
      idx4: (..., 4) int64 flat indices into the source map.
      w4: (..., 4) float weights, summing to 1.
    """
    left = xp.floor(i_def)
    right = left + 1
    top = xp.floor(j_def)
    bottom = top + 1

    w4 = bilinear_weights(left - i_def, right - i_def, top - j_def, bottom - j_def, xp=xp)

    left_i = left.astype(xp.int64)
    right_i = right.astype(xp.int64)
    top_i = top.astype(xp.int64)
    bottom_i = bottom.astype(xp.int64)
    idx4 = xp.stack(
        [
            sub2ind(left_i, top_i, ny, nx, xp),
            sub2ind(right_i, top_i, ny, nx, xp),
            sub2ind(left_i, bottom_i, ny, nx, xp),
            sub2ind(right_i, bottom_i, ny, nx, xp),
        ],
        axis=-1,
    )
    return idx4, w4
