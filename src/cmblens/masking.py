"""
Apodized boundary + point-source masks on a flat-sky grid.

The mask is the product of
  - a boundary mask, zero within `edge_padding_deg` of the map edge, and
  - a point-source mask, zero within `ptsrc_radius_arcmin` of randomly placed
    sources (SPT-like density, 120 per 100 deg^2, by default),
each cosine-apodized over its own width:

  apod(d) = (1 - cos(pi * min(d, w) / w)) / 2

where d is the distance (pixels) to the nearest masked pixel. The boundary
distance is optionally Gaussian-smoothed first, which rounds the corners.

All widths below the public `make_mask` are in pixels. Arrays are (ny, nx).
"""

from __future__ import annotations

import numpy as np
from scipy import ndimage

from .field import FlatGrid, FlatMap

PTSRC_DENSITY_PER_DEG2 = 120.0 / 100.0


def _grid_shape(nside: int | tuple[int, int]) -> tuple[int, int]:
    """(ny, nx) from an int or an (nx, ny) pair."""
    if isinstance(nside, (int, np.integer)):
        return int(nside), int(nside)
    nx, ny = nside
    return int(ny), int(nx)


def boundary_mask(nside: int | tuple[int, int], pad: int) -> np.ndarray:
    """Boolean (ny, nx) mask, False within `pad` pixels of any edge."""
    m = np.ones(_grid_shape(nside), dtype=bool)
    pad = int(pad)
    if pad > 0:
        m[:pad, :] = False
        m[:, :pad] = False
        m[-pad:, :] = False
        m[:, -pad:] = False
    return m


def sim_ptsrcs(nside: int | tuple[int, int], nsources: int, seed: int | None = None) -> np.ndarray:
    """Boolean (ny, nx) map with `nsources` uniformly placed sources (collisions allowed)."""
    ny, nx = _grid_shape(nside)
    rng = np.random.default_rng(seed)
    m = np.zeros((ny, nx), dtype=bool)
    n = int(nsources)
    if n > 0:
        m[rng.integers(0, ny, size=n), rng.integers(0, nx, size=n)] = True
    return m


def bleed(img: np.ndarray, w: float) -> np.ndarray:
    """True for pixels closer than `w` to any True pixel of `img`."""
    img = np.asarray(img, dtype=bool)
    if not bool(np.any(img)):
        return np.zeros(img.shape, dtype=bool)
    return ndimage.distance_transform_edt(~img) < float(w)


def cos_apod(img: np.ndarray, w: float, smooth_distance: float | bool = False) -> np.ndarray:
    """
    Cosine taper of a boolean mask.

    Args:
      img: (ny, nx) bool, True where the map is kept.
      w: taper width in pixels.
      smooth_distance: Gaussian sigma (pixels) applied to the distance map, or False.

    Returns:
      (ny, nx) float64 in [0, 1]; 0 on masked pixels, 1 beyond `w` from them.
    """
    img = np.asarray(img, dtype=bool)
    if float(w) <= 0:
        return img.astype(np.float64)
    if bool(np.all(img)):
        return np.ones(img.shape, dtype=np.float64)
    distance = ndimage.distance_transform_edt(img)
    if smooth_distance is not False and float(smooth_distance) > 0:
        distance = ndimage.gaussian_filter(distance, sigma=float(smooth_distance), mode="nearest")
    return img * (1.0 - np.cos(np.minimum(distance, float(w)) / float(w) * np.pi)) / 2.0


def round_edges(img: np.ndarray, w: float) -> np.ndarray:
    """Round the corners of a boolean mask by Gaussian-smoothing and re-thresholding at 0.5."""
    smoothed = ndimage.gaussian_filter(np.asarray(img, dtype=np.float64), sigma=float(w), mode="nearest")
    return ~(smoothed < 0.5)


def default_num_ptsrcs(nx: int, ny: int, theta_pix: float) -> int:
    area_deg2 = float(nx) * float(ny) * (float(theta_pix) / 60.0) ** 2
    return int(round(area_deg2 * PTSRC_DENSITY_PER_DEG2))


def make_mask(
    nside: int | tuple[int, int],
    theta_pix: float,
    *,
    edge_padding_deg: float = 2,
    edge_rounding_deg: float = 1,
    apodization_deg: float | bool = 1,
    ptsrc_radius_arcmin: float = 7,
    num_ptsrcs: int | None = None,
    seed: int | None = None,
    verbose: bool = False,
) -> FlatMap:
    """
    Boundary x point-source mask as a float32 FlatMap.

    Args:
      nside: grid size, an int (square) or (nx, ny).
      theta_pix: pixel size in arcmin.
      edge_padding_deg: masked border width.
      edge_rounding_deg: Gaussian smoothing of the boundary distance (corner rounding).
      apodization_deg: boundary taper width; 0/False gives a binary mask.
      ptsrc_radius_arcmin: hole radius around each point source (also its taper width).
      num_ptsrcs: number of sources; default is the SPT-like density for the map area.
      seed: RNG seed for source positions.
      verbose: print a summary line.
    """
    ny, nx = _grid_shape(nside)
    theta_pix = float(theta_pix)
    if not theta_pix > 0:
        raise ValueError(f"theta_pix must be > 0 arcmin; got {theta_pix}.")
    if num_ptsrcs is None:
        num_ptsrcs = default_num_ptsrcs(nx, ny, theta_pix)

    def deg2npix(x: float) -> int:
        return int(round(float(x) / theta_pix * 60.0))

    def arcmin2npix(x: float) -> int:
        return int(round(float(x) / theta_pix))

    ptsrc = ~bleed(sim_ptsrcs((nx, ny), int(num_ptsrcs), seed=seed), arcmin2npix(ptsrc_radius_arcmin))
    boundary = boundary_mask((nx, ny), deg2npix(edge_padding_deg))
    if apodization_deg is False or float(apodization_deg) == 0:
        mask = (boundary & ptsrc).astype(np.float64)
    else:
        mask = cos_apod(boundary, deg2npix(apodization_deg), deg2npix(edge_rounding_deg)) * cos_apod(
            ptsrc, arcmin2npix(ptsrc_radius_arcmin)
        )

    if verbose:
        print(
            f"[mask] {ny}x{nx} theta_pix={theta_pix}'  n_ptsrcs={int(num_ptsrcs)}  "
            f"kept_fraction={float(np.mean(mask > 0)):.3f}",
            flush=True,
        )
    return FlatMap(mask.astype(np.float32), FlatGrid(ny=ny, nx=nx, theta_pix=theta_pix))


def make_mask_like(f: FlatMap, **kwargs) -> FlatMap:
    """`make_mask` on the grid of an existing field."""
    grid = f.grid
    m = make_mask((grid.nx, grid.ny), grid.theta_pix, **kwargs)
    return FlatMap(m.arr, grid)
