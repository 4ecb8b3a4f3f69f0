"""
cmblens: bilinear lensing of flat-sky CMB maps.

The main public entry points are:
  - `BilinearLens` (lensing operator: apply, adjoint, inverse, gradients)
  - `make_mask` (apodized boundary + point-source masks)
"""

from .bilinearlens import (
    BilinearLens,
    LensConfig,
    adapt_storage,
    construct_backward,
    lens_backward,
    lens_forward,
)
from .errors import BackendUnavailable, CMBLensError, UnsupportedOperation
from .field import (
    Backend,
    FieldKind,
    FieldTuple,
    FlatFourier,
    FlatGrid,
    FlatMap,
    backend_of,
    dot,
    gradient,
    gradient_adjoint,
    to_backend,
    to_fourier,
    to_map,
)
from .masking import make_mask, make_mask_like

__all__ = [
    "BilinearLens",
    "LensConfig",
    "adapt_storage",
    "construct_backward",
    "lens_forward",
    "lens_backward",
    "BackendUnavailable",
    "CMBLensError",
    "UnsupportedOperation",
    "Backend",
    "FieldKind",
    "FieldTuple",
    "FlatFourier",
    "FlatGrid",
    "FlatMap",
    "backend_of",
    "dot",
    "gradient",
    "gradient_adjoint",
    "to_backend",
    "to_fourier",
    "to_map",
    "make_mask",
    "make_mask_like",
]
