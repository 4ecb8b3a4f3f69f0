"""
Bilinear lensing operator L(phi) on flat-sky maps.

The lensed map samples the unlensed map at the deflected position of each
pixel, using bilinear interpolation from the 4 enclosing pixels:

  f_lensed(x) = f(x + grad phi(x))

In pixel units, output pixel (i, j) reads the source map at

  i_def = i + (d_y phi)[i, j] / dx
  j_def = j + (d_x phi)[i, j] / dx

with periodic wrap at the edges. The weights are stored once as a sparse
matrix (see `cmblens.sparse_repr`), so

  L f   = M f          L^T f  = M^T f
  L^-1 f ~ GMRES(M, f)     preconditioned by the anti-lensing matrix M(-phi)

The inverse solves run a fixed number of Krylov iterations (default 5) and
always return; convergence is not checked. Callers that need a verified
inverse must compute the residual themselves. The default cap is a
heuristic that is not tuned for large deflections.

There is no closed form for log|det L|; `logdet` raises.

phi == 0 is special-cased: no matrix is built and every application
returns its input unchanged.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Any, Callable

import jax.numpy as jnp
import jax.scipy.sparse.linalg as jspla
import numpy as np
import scipy.sparse.linalg as spla

from .errors import UnsupportedOperation
from .field import (
    Backend,
    FieldKind,
    FlatMap,
    array_module,
    backend_of,
    field_kind,
    gradient,
    gradient_adjoint,
    is_zero,
    rebuild,
    to_backend,
    to_map,
)
from .sparse_repr import SparseRepr, build_sparse_repr

GMRES_MAXITER = 5
GMRES_RTOL = float(np.sqrt(np.finfo(np.float64).eps))


class _Identity:
    def __repr__(self) -> str:
        return "IDENTITY"


# Marker stored in place of a sparse matrix when phi == 0.
IDENTITY = _Identity()


@dataclass(frozen=True)
class LensConfig:
    """
    Settings shared by an operator and the operators derived from it.

    n_threads: CPU threads used to build the sparse matrix.
    gmres_maxiter: Krylov iterations per inverse solve (one restart cycle).
    gmres_rtol: relative residual at which GMRES may stop early.
    verbose: print progress lines.
    """

    n_threads: int = 1
    gmres_maxiter: int = GMRES_MAXITER
    gmres_rtol: float = GMRES_RTOL
    verbose: bool = False

    def __post_init__(self) -> None:
        if int(self.n_threads) < 1:
            raise ValueError("n_threads must be >= 1.")
        if int(self.gmres_maxiter) < 1:
            raise ValueError("gmres_maxiter must be >= 1.")
        if not float(self.gmres_rtol) >= 0:
            raise ValueError("gmres_rtol must be >= 0.")


def _check_phi(phi) -> FlatMap:
    if field_kind(phi) is not FieldKind.SCALAR:
        raise TypeError("phi must be a scalar field (FlatMap or FlatFourier), not a composite.")
    phi_map = to_map(phi)
    if phi_map.arr.ndim != 2:
        raise ValueError(f"phi must be a single (ny, nx) map; got array shape {tuple(phi_map.arr.shape)}.")
    return phi_map


def deflected_coordinates(phi: FlatMap):
    """
    Fractional (row, column) coordinates each pixel is deflected to.

    Returns:
      i_def, j_def: (ny, nx) arrays in pixel units, on phi's backend.
    """
    grid = phi.grid
    xp = array_module(phi.arr)
    d_x, d_y = gradient(phi)
    i_def = to_map(d_y).arr / grid.dx + xp.arange(grid.ny, dtype=xp.float64)[:, None]
    j_def = to_map(d_x).arr / grid.dx + xp.arange(grid.nx, dtype=xp.float64)[None, :]
    return i_def, j_def


def _planewise(fn: Callable, arr):
    """Apply a (n_pix,) -> (n_pix,) map to each plane of a (ny,nx) or (n_batch,ny,nx) array."""
    xp = array_module(arr)
    if arr.ndim == 2:
        return xp.reshape(fn(xp.reshape(arr, (-1,))), arr.shape)
    planes = [xp.reshape(fn(xp.reshape(plane, (-1,))), plane.shape) for plane in arr]
    return xp.stack(planes, axis=0)


def _gmres_cpu(matvec: Callable, precond: Callable, b: np.ndarray, *, maxiter: int, rtol: float) -> np.ndarray:
    n = int(b.size)
    A_op = spla.LinearOperator((n, n), matvec=matvec, dtype=np.float64)
    M_op = spla.LinearOperator((n, n), matvec=precond, dtype=np.float64)
    # restart=maxiter, one cycle: `maxiter` Krylov iterations in total.
    x, _info = spla.gmres(
        A_op,
        np.asarray(b, dtype=np.float64),
        M=M_op,
        rtol=float(rtol),
        atol=0.0,
        restart=int(maxiter),
        maxiter=1,
    )
    return np.asarray(x, dtype=np.float64)


def _gmres_gpu(matvec: Callable, precond: Callable, b, *, maxiter: int, rtol: float):
    x, _ = jspla.gmres(
        matvec,
        jnp.asarray(b, dtype=jnp.float64),
        M=precond,
        tol=float(rtol),
        atol=0.0,
        restart=int(maxiter),
        maxiter=1,
    )
    return x


class BilinearLens:
    """
    Lensing operator with bilinear interpolation.

    Forward, adjoint, inverse and inverse-adjoint application are all
    supported, as is the gradient w.r.t. phi (see `lens_backward`).
    Forward and adjoint are single sparse products; the inverses are a few
    GMRES steps preconditioned with anti-lensing, the sparse matrix built
    from -phi on first use and cached.

    Usage:
      L = BilinearLens(phi)
      L @ f            # lens
      L.H @ f          # adjoint
      L.solve(f)       # approximate inverse
      L.H.solve(f)     # approximate inverse-adjoint
      L(phi2)          # same settings, new deflection

    Fields may be FlatMap / FlatFourier (optionally batched along axis 0) or
    composites (FieldTuple / tuple), which are lensed component-wise.
    Results are position-space maps.
    """

    def __init__(self, phi, *, config: LensConfig | None = None, **overrides: Any) -> None:
        cfg = LensConfig() if config is None else config
        if overrides:
            cfg = replace(cfg, **overrides)
        self.config = cfg
        self.phi = _check_phi(phi)
        self.backend = backend_of(self.phi)
        self._anti_lock = threading.Lock()
        self._anti_lensing: SparseRepr | _Identity | None = None

        if is_zero(self.phi):
            self.sparse_repr: SparseRepr | _Identity = IDENTITY
            self._anti_lensing = IDENTITY
            return

        i_def, j_def = deflected_coordinates(self.phi)
        self.sparse_repr = build_sparse_repr(i_def, j_def, backend=self.backend, n_threads=int(cfg.n_threads))
        if cfg.verbose:
            grid = self.phi.grid
            print(
                f"[lens] built {grid.ny}x{grid.nx} bilinear matrix on {self.backend.value}  nnz={self.sparse_repr.nnz}",
                flush=True,
            )

    @classmethod
    def _from_parts(cls, phi: FlatMap, sparse_repr, anti_lensing, config: LensConfig) -> BilinearLens:
        lens = cls.__new__(cls)
        lens.config = config
        lens.phi = phi
        lens.backend = backend_of(phi)
        lens._anti_lock = threading.Lock()
        lens._anti_lensing = anti_lensing
        lens.sparse_repr = sparse_repr
        return lens

    def __repr__(self) -> str:
        grid = self.phi.grid
        kind = "identity" if self.is_identity else "sparse"
        return f"BilinearLens({grid.ny}x{grid.nx}, {kind}, backend={self.backend.value})"

    @property
    def is_identity(self) -> bool:
        return self.sparse_repr is IDENTITY

    @property
    def H(self) -> AdjointBilinearLens:
        return AdjointBilinearLens(self)

    def __call__(self, phi) -> BilinearLens:
        return BilinearLens(phi, config=self.config)

    with_phi = __call__

    def __matmul__(self, f):
        return self.apply(f)

    # -- anti-lensing cache --

    def anti_lensing_sparse_repr(self) -> SparseRepr | _Identity:
        """Sparse matrix of L(-phi); built on first call, at most once per operator."""
        if self._anti_lensing is None:
            with self._anti_lock:
                if self._anti_lensing is None:
                    anti = BilinearLens(-self.phi, config=replace(self.config, verbose=False))
                    self._anti_lensing = anti.sparse_repr
                    if self.config.verbose:
                        print(f"[anti-lens] cached anti-lensing matrix  nnz={anti.sparse_repr.nnz}", flush=True)
        return self._anti_lensing

    # -- application --

    def _check_field(self, fmap: FlatMap) -> None:
        if fmap.grid.shape != self.phi.grid.shape:
            raise ValueError(f"Field grid {fmap.grid.shape} does not match phi grid {self.phi.grid.shape}.")
        if backend_of(fmap) is not self.backend:
            raise ValueError(
                f"Field is on {backend_of(fmap).value} but the operator is on {self.backend.value}; "
                "relocate one of them with to_backend / adapt_storage."
            )

    def _apply(self, f, adjoint: bool):
        if self.is_identity:
            return f
        if field_kind(f) is FieldKind.COMPOSITE:
            return rebuild(f, (self._apply(c, adjoint) for c in f))
        fmap = to_map(f)
        self._check_field(fmap)
        mul = self.sparse_repr.rmatvec if adjoint else self.sparse_repr.matvec
        return FlatMap(_planewise(mul, fmap.arr), fmap.grid)

    def _solve(self, f, adjoint: bool):
        if self.is_identity:
            return f
        if field_kind(f) is FieldKind.COMPOSITE:
            return rebuild(f, (self._solve(c, adjoint) for c in f))
        fmap = to_map(f)
        self._check_field(fmap)
        anti = self.anti_lensing_sparse_repr()
        if adjoint:
            matvec, precond = self.sparse_repr.rmatvec, anti.rmatvec
        else:
            matvec, precond = self.sparse_repr.matvec, anti.matvec
        gmres = _gmres_gpu if self.backend is Backend.GPU else _gmres_cpu
        cfg = self.config

        def solve_plane(b):
            return gmres(matvec, precond, b, maxiter=int(cfg.gmres_maxiter), rtol=float(cfg.gmres_rtol))

        return FlatMap(_planewise(solve_plane, fmap.arr), fmap.grid)

    def apply(self, f):
        """L f."""
        return self._apply(f, adjoint=False)

    def apply_adjoint(self, f):
        """L^T f."""
        return self._apply(f, adjoint=True)

    def apply_inverse(self, f):
        """Approximate L^-1 f (fixed GMRES iteration count, never raises on non-convergence)."""
        return self._solve(f, adjoint=False)

    def apply_inverse_adjoint(self, f):
        """Approximate L^-T f."""
        return self._solve(f, adjoint=True)

    solve = apply_inverse

    def logdet(self) -> float:
        raise UnsupportedOperation(
            "logdet of BilinearLens cannot be computed: the bilinear remap has no closed-form determinant."
        )

    # -- storage --

    def adapt(self, backend: Backend) -> BilinearLens:
        """Equivalent operator with phi and all matrices on `backend`."""
        backend = Backend(backend)
        if backend is self.backend:
            return self
        phi = to_backend(self.phi, backend)
        if self.is_identity:
            return BilinearLens._from_parts(phi, IDENTITY, IDENTITY, self.config)
        anti = self._anti_lensing
        if anti is not None:
            anti = anti.to_backend(backend)
        return BilinearLens._from_parts(phi, self.sparse_repr.to_backend(backend), anti, self.config)


class AdjointBilinearLens:
    """Lazy transpose view of a BilinearLens."""

    def __init__(self, parent: BilinearLens) -> None:
        self.parent = parent

    def __repr__(self) -> str:
        return f"{self.parent!r}.H"

    @property
    def H(self) -> BilinearLens:
        return self.parent

    def __matmul__(self, f):
        return self.parent.apply_adjoint(f)

    def solve(self, f):
        return self.parent.apply_inverse_adjoint(f)

    def logdet(self) -> float:
        return self.parent.logdet()


def adapt_storage(backend: Backend, lens: BilinearLens) -> BilinearLens:
    """Relocate an operator to `backend`."""
    return lens.adapt(backend)


# -- reverse-mode rules --


@dataclass(frozen=True)
class LensContext:
    """Saved forward state for `lens_backward`."""

    lens: BilinearLens
    f_lensed: Any


def construct_backward(delta):
    """Cotangent rule for phi -> BilinearLens(phi): passes through unchanged."""
    return delta


def lens_forward(lens: BilinearLens, f) -> tuple[Any, LensContext]:
    """Forward pass of f -> L(phi) f, keeping what the backward pass needs."""
    f_lensed = lens @ f
    return f_lensed, LensContext(lens=lens, f_lensed=f_lensed)


def _plane_sum(arr):
    return arr.sum(axis=0) if arr.ndim == 3 else arr


def _deflection_cotangent(delta, f_lensed, grid) -> tuple[FlatMap, FlatMap]:
    """(sum delta * d_x f_lensed, sum delta * d_y f_lensed) over planes and components."""
    if field_kind(f_lensed) is FieldKind.COMPOSITE:
        if field_kind(delta) is not FieldKind.COMPOSITE or len(delta) != len(f_lensed):
            raise ValueError("Upstream gradient must have the same components as the lensed field.")
        parts = [_deflection_cotangent(d, fl, grid) for d, fl in zip(delta, f_lensed, strict=True)]
        vx, vy = parts[0]
        for px, py in parts[1:]:
            vx, vy = vx + px, vy + py
        return vx, vy
    d = to_map(delta).arr
    g_x, g_y = gradient(f_lensed)
    return FlatMap(_plane_sum(d * g_x.arr), grid), FlatMap(_plane_sum(d * g_y.arr), grid)


def lens_backward(ctx: LensContext, delta) -> tuple[FlatMap, Any]:
    """
    Backward pass of f -> L(phi) f for upstream gradient `delta`.

    Returns:
      grad_phi: grad^T (delta * grad f_lensed), a (ny, nx) map. Uses the
        gradient of the lensed map in place of the source gradient at the
        deflected position.
      grad_f: L^T delta, in position space.
    """
    lens = ctx.lens
    grad_f = lens.H @ delta
    vx, vy = _deflection_cotangent(delta, ctx.f_lensed, lens.phi.grid)
    grad_phi = gradient_adjoint(vx, vy)
    return grad_phi, grad_f
