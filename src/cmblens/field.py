"""
Flat-sky scalar fields on a periodic pixel grid.

Conventions:
  - maps are (ny, nx) arrays, or (n_batch, ny, nx) for a stack of planes
  - axis -2 is y (rows, index i), axis -1 is x (columns, index j)
  - flattened pixel index: I = i * nx + j (C order)
  - Fourier coefficients are rfft2 over the last two axes: (..., ny, nx//2+1)
  - derivatives are in physical units (per radian), dx = theta_pix in radians

A field's array is either a numpy array (CPU backend) or a JAX array
(GPU backend, i.e. whatever accelerator JAX is configured with). Composite
fields (e.g. Q/U) are `FieldTuple`s or plain tuples of scalar fields.
"""

from __future__ import annotations

import enum
import numbers
from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

jax.config.update("jax_enable_x64", True)

DERIV_MODES = ("fourier", "map")


class Backend(enum.Enum):
    CPU = "cpu"
    GPU = "gpu"


class FieldKind(enum.Enum):
    SCALAR = "scalar"
    COMPOSITE = "composite"


def is_gpu_array(arr: Any) -> bool:
    return isinstance(arr, jax.Array)


def array_module(arr: Any):
    """numpy or jax.numpy, matching where `arr` lives."""
    return jnp if is_gpu_array(arr) else np


@dataclass(frozen=True)
class FlatGrid:
    """Periodic ny x nx pixel grid with square pixels of `theta_pix` arcmin."""

    ny: int
    nx: int
    theta_pix: float = 1.0
    deriv_mode: str = "fourier"

    def __post_init__(self) -> None:
        if int(self.ny) <= 0 or int(self.nx) <= 0:
            raise ValueError(f"Grid dimensions must be positive; got ny={self.ny}, nx={self.nx}.")
        if not float(self.theta_pix) > 0:
            raise ValueError(f"theta_pix must be > 0 arcmin; got {self.theta_pix}.")
        if self.deriv_mode not in DERIV_MODES:
            raise ValueError(f"deriv_mode must be one of {DERIV_MODES}; got {self.deriv_mode!r}.")
        object.__setattr__(self, "ny", int(self.ny))
        object.__setattr__(self, "nx", int(self.nx))

    @property
    def shape(self) -> tuple[int, int]:
        return (self.ny, self.nx)

    @property
    def n_pix(self) -> int:
        return self.ny * self.nx

    @property
    def dx(self) -> float:
        """Pixel size in radians."""
        return float(self.theta_pix) * np.pi / (180.0 * 60.0)

    def wavenumbers(self) -> tuple[np.ndarray, np.ndarray]:
        """
        Angular wavenumbers for rfft2 coefficients.

        Returns:
          ky: (ny, 1) full-axis wavenumbers along y.
          kx: (nx//2+1,) half-axis wavenumbers along x.

        Nyquist entries are zeroed so the spectral derivative is exactly
        antisymmetric on real maps.
        """
        ky = 2.0 * np.pi * np.fft.fftfreq(self.ny, d=self.dx)
        kx = 2.0 * np.pi * np.fft.rfftfreq(self.nx, d=self.dx)
        if self.ny % 2 == 0:
            ky[self.ny // 2] = 0.0
        if self.nx % 2 == 0:
            kx[-1] = 0.0
        return ky[:, None], kx


def _binary(op, a, b, grid: FlatGrid):
    if isinstance(b, FlatMap):
        if b.grid != grid:
            raise ValueError("Fields live on different grids.")
        return FlatMap(op(a, b.arr), grid)
    if isinstance(b, numbers.Number):
        return FlatMap(op(a, b), grid)
    return NotImplemented


@dataclass(frozen=True, eq=False)
class FlatMap:
    """Position-space scalar field."""

    arr: Any
    grid: FlatGrid

    def __post_init__(self) -> None:
        arr = self.arr if is_gpu_array(self.arr) else np.asarray(self.arr)
        if arr.ndim not in (2, 3) or tuple(arr.shape[-2:]) != self.grid.shape:
            raise ValueError(
                f"FlatMap array must have shape {self.grid.shape} or (n_batch, *{self.grid.shape}); got {tuple(arr.shape)}."
            )
        object.__setattr__(self, "arr", arr)

    @property
    def n_batch(self) -> int | None:
        return int(self.arr.shape[0]) if self.arr.ndim == 3 else None

    def __add__(self, other):
        return _binary(lambda x, y: x + y, self.arr, other, self.grid)

    __radd__ = __add__

    def __sub__(self, other):
        return _binary(lambda x, y: x - y, self.arr, other, self.grid)

    def __rsub__(self, other):
        return _binary(lambda x, y: y - x, self.arr, other, self.grid)

    def __mul__(self, other):
        return _binary(lambda x, y: x * y, self.arr, other, self.grid)

    __rmul__ = __mul__

    def __neg__(self) -> FlatMap:
        return FlatMap(-self.arr, self.grid)


@dataclass(frozen=True, eq=False)
class FlatFourier:
    """Harmonic-space scalar field (rfft2 coefficients)."""

    arr: Any
    grid: FlatGrid

    def __post_init__(self) -> None:
        arr = self.arr if is_gpu_array(self.arr) else np.asarray(self.arr)
        expect = (self.grid.ny, self.grid.nx // 2 + 1)
        if arr.ndim not in (2, 3) or tuple(arr.shape[-2:]) != expect:
            raise ValueError(f"FlatFourier array must end in shape {expect}; got {tuple(arr.shape)}.")
        object.__setattr__(self, "arr", arr)

    def __neg__(self) -> FlatFourier:
        return FlatFourier(-self.arr, self.grid)


@dataclass(frozen=True, eq=False)
class FieldTuple:
    """Composite field, e.g. the (Q, U) Stokes maps."""

    fs: tuple

    def __post_init__(self) -> None:
        fs = tuple(self.fs)
        if not fs:
            raise ValueError("FieldTuple needs at least one component.")
        object.__setattr__(self, "fs", fs)

    def __iter__(self):
        return iter(self.fs)

    def __len__(self) -> int:
        return len(self.fs)

    def __getitem__(self, k):
        return self.fs[k]

    def __neg__(self) -> FieldTuple:
        return FieldTuple(tuple(-f for f in self.fs))


def field_kind(f) -> FieldKind:
    if isinstance(f, (FlatMap, FlatFourier)):
        return FieldKind.SCALAR
    if isinstance(f, (FieldTuple, tuple)):
        return FieldKind.COMPOSITE
    raise TypeError(f"Expected a FlatMap, FlatFourier, FieldTuple or tuple of fields; got {type(f).__name__}.")


def rebuild(like, components) -> FieldTuple | tuple:
    """Reassemble components into the same composite type as `like`."""
    components = tuple(components)
    return FieldTuple(components) if isinstance(like, FieldTuple) else components


def backend_of(f) -> Backend:
    """Which backend holds the field's data (GPU means a JAX array)."""
    if field_kind(f) is FieldKind.COMPOSITE:
        backends = {backend_of(c) for c in f}
        if len(backends) != 1:
            raise ValueError("Composite field mixes CPU and GPU components.")
        return backends.pop()
    return Backend.GPU if is_gpu_array(f.arr) else Backend.CPU


def to_backend(f, backend: Backend):
    """Copy a field's data onto `backend` (no-op if already there)."""
    backend = Backend(backend)
    if field_kind(f) is FieldKind.COMPOSITE:
        return rebuild(f, (to_backend(c, backend) for c in f))
    if backend_of(f) is backend:
        return f
    arr = jnp.asarray(f.arr) if backend is Backend.GPU else np.asarray(f.arr)
    return type(f)(arr, f.grid)


def to_map(f):
    """Position-space representation of a field."""
    if field_kind(f) is FieldKind.COMPOSITE:
        return rebuild(f, (to_map(c) for c in f))
    if isinstance(f, FlatMap):
        return f
    xp = array_module(f.arr)
    return FlatMap(xp.fft.irfft2(f.arr, s=f.grid.shape), f.grid)


def to_fourier(f):
    """Harmonic-space representation of a field."""
    if field_kind(f) is FieldKind.COMPOSITE:
        return rebuild(f, (to_fourier(c) for c in f))
    if isinstance(f, FlatFourier):
        return f
    xp = array_module(f.arr)
    return FlatFourier(xp.fft.rfft2(f.arr), f.grid)


def is_zero(f) -> bool:
    if field_kind(f) is FieldKind.COMPOSITE:
        return all(is_zero(c) for c in f)
    xp = array_module(f.arr)
    return not bool(xp.any(f.arr != 0))


def _deriv_map(arr, grid: FlatGrid, axis: int):
    """Centered finite difference with periodic wrap along `axis`."""
    xp = array_module(arr)
    return (xp.roll(arr, -1, axis=axis) - xp.roll(arr, 1, axis=axis)) / (2.0 * grid.dx)


def _deriv_fourier(coeffs, grid: FlatGrid, axis: int):
    xp = array_module(coeffs)
    ky, kx = grid.wavenumbers()
    k = kx if axis == -1 else ky
    out = coeffs * (1j * xp.asarray(k))
    return xp.fft.irfft2(out, s=grid.shape)


def gradient(f) -> tuple[FlatMap, FlatMap]:
    """
    Spatial gradient (d_x f, d_y f) of a scalar field, as position-space maps.

    The grid's `deriv_mode` picks a spectral ("fourier") or centered
    finite-difference ("map") derivative. Both are exactly antisymmetric,
    so `gradient_adjoint` is minus the divergence.
    """
    if field_kind(f) is not FieldKind.SCALAR:
        raise TypeError("gradient expects a scalar field.")
    grid = f.grid
    if grid.deriv_mode == "map":
        arr = to_map(f).arr
        return FlatMap(_deriv_map(arr, grid, -1), grid), FlatMap(_deriv_map(arr, grid, -2), grid)
    coeffs = to_fourier(f).arr
    return FlatMap(_deriv_fourier(coeffs, grid, -1), grid), FlatMap(_deriv_fourier(coeffs, grid, -2), grid)


def gradient_adjoint(vx, vy) -> FlatMap:
    """Adjoint of `gradient`: maps a (vx, vy) pair back to a scalar map."""
    gx_x, _ = gradient(vx)
    _, gy_y = gradient(vy)
    return -(gx_x + gy_y)


def dot(a, b) -> float:
    """Real inner product, summed over pixels, batch planes and components."""
    if field_kind(a) is FieldKind.COMPOSITE:
        if len(a) != len(b):
            raise ValueError("Composite fields have different numbers of components.")
        return float(sum(dot(x, y) for x, y in zip(a, b, strict=True)))
    a, b = to_map(a), to_map(b)
    if a.grid.shape != b.grid.shape:
        raise ValueError("Fields live on different grids.")
    xp = array_module(a.arr)
    return float(xp.sum(a.arr * b.arr))
