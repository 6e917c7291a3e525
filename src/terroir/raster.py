#!/usr/bin/env python3
"""terroir.raster

Pixel-aligned raster fields shared by every subsystem.

A RasterField is a 2-D numpy masked array plus the grid it lives on
(affine transform + CRS). The mask is the no-data flag: masked pixels stay
masked through arithmetic, reductions and thresholding, so a missing
measurement never turns into a silent 0 or False.

NaN and +/-inf are always folded into the mask on construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.features import geometry_mask
from rasterio.transform import Affine, array_bounds
from rasterio.warp import reproject, transform_bounds
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from terroir.errors import ConfigurationError


def as_masked(x: Any) -> np.ma.MaskedArray:
    """Return x as a masked array with non-finite floats masked."""
    arr = np.ma.asarray(x)
    raw = np.ma.getdata(arr)
    mask = np.ma.getmaskarray(arr)
    if raw.dtype.kind in "fc":
        mask = mask | ~np.isfinite(raw)
    return np.ma.MaskedArray(raw, mask=mask)


@dataclass
class RasterField:
    """One per-pixel quantity (or boolean mask) over a fixed grid."""

    name: str
    data: np.ma.MaskedArray
    unit: str = ""
    transform: Optional[Affine] = None
    crs: Optional[str] = None
    period: Optional[Tuple[str, str]] = None

    def __post_init__(self) -> None:
        self.data = as_masked(self.data)
        if self.data.ndim != 2:
            raise ConfigurationError(f"{self.name}: raster fields are 2-D, got shape {self.data.shape}")

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def valid(self) -> np.ndarray:
        """Boolean array, True where the pixel carries data."""
        return ~np.ma.getmaskarray(self.data)

    def derive(self, name: str, data: Any, unit: Optional[str] = None) -> "RasterField":
        """New field on the same grid and period."""
        return RasterField(
            name=name,
            data=data,
            unit=self.unit if unit is None else unit,
            transform=self.transform,
            crs=self.crs,
            period=self.period,
        )

    def clip(self, geometry: BaseGeometry, geometry_crs: Optional[str] = None) -> "RasterField":
        """Mask every pixel whose centre falls outside geometry."""
        if self.transform is None:
            raise ConfigurationError(f"{self.name}: can't clip a field without a transform")
        if geometry_crs and self.crs:
            geometry = reproject_geometry(geometry, geometry_crs, self.crs)
        outside = geometry_mask([mapping(geometry)], out_shape=self.shape, transform=self.transform)
        data = np.ma.MaskedArray(np.ma.getdata(self.data), mask=np.ma.getmaskarray(self.data) | outside)
        return self.derive(self.name, data)


def same_crs(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return True
    return CRS.from_user_input(a) == CRS.from_user_input(b)


def reproject_geometry(geometry: BaseGeometry, src_crs: Any, dst_crs: Any) -> BaseGeometry:
    """Reproject a single shapely geometry (no-op when CRSs match)."""
    if same_crs(src_crs, dst_crs):
        return geometry
    return gpd.GeoSeries([geometry], crs=src_crs).to_crs(dst_crs).iloc[0]


def is_geographic(crs: Any) -> bool:
    return crs is not None and CRS.from_user_input(crs).is_geographic


def check_same_grid(*fields: RasterField) -> None:
    """Raise ConfigurationError unless all fields share one pixel grid."""
    if not fields:
        return
    first = fields[0]
    for f in fields[1:]:
        if f.shape != first.shape:
            raise ConfigurationError(
                f"Grid mismatch: {first.name} {first.shape} vs {f.name} {f.shape}"
            )
        if first.transform is not None and f.transform is not None and f.transform != first.transform:
            raise ConfigurationError(f"Grid mismatch: {first.name} and {f.name} have different transforms")
        if not same_crs(first.crs, f.crs):
            raise ConfigurationError(f"Grid mismatch: {first.name} ({first.crs}) vs {f.name} ({f.crs})")


def union_grid(grids: Sequence[Tuple[Tuple[int, int], Affine, Any]]) -> Tuple[Tuple[int, int], Affine, Any]:
    """Smallest grid covering every (shape, transform, crs) in grids.

    The result takes the first grid's CRS and resolution and is snapped to its
    pixel edges, so the first grid's pixels map onto it one to one.
    """
    _, t0, crs0 = grids[0]
    if t0.b != 0 or t0.d != 0 or t0.a <= 0 or t0.e >= 0:
        raise ConfigurationError("Only north-up grids can be mosaicked")
    xres, yres = t0.a, -t0.e
    west = south = np.inf
    east = north = -np.inf
    for (h, w), t, crs in grids:
        b = array_bounds(h, w, t)
        if not same_crs(crs, crs0):
            b = transform_bounds(crs, crs0, *b)
        west, south = min(west, b[0]), min(south, b[1])
        east, north = max(east, b[2]), max(north, b[3])

    eps = 1e-9
    col0 = np.floor((west - t0.c) / xres + eps)
    col1 = np.ceil((east - t0.c) / xres - eps)
    row0 = np.floor((t0.f - north) / yres + eps)
    row1 = np.ceil((t0.f - south) / yres - eps)
    transform = Affine(xres, 0.0, t0.c + col0 * xres, 0.0, -yres, t0.f - row0 * yres)
    return (int(row1 - row0), int(col1 - col0)), transform, crs0


def warp_to(field: RasterField, transform: Affine, crs: Any, shape: Tuple[int, int]) -> RasterField:
    """Resample field onto the given grid (nearest neighbour).

    Masks stay boolean; no-data survives the resampling as no-data.
    """
    if field.shape == tuple(shape) and field.transform == transform and same_crs(field.crs, crs):
        return field
    if field.transform is None or field.crs is None or crs is None:
        raise ConfigurationError(f"Can't warp {field.name} without transform/CRS")

    is_mask = field.data.dtype == bool
    if is_mask:
        src = field.data.astype("uint8").filled(255)
        dst = np.full(shape, 255, dtype="uint8")
        nodata = 255
    else:
        src = np.ma.asarray(field.data, dtype="float64").filled(np.nan)
        dst = np.full(shape, np.nan, dtype="float64")
        nodata = np.nan

    reproject(
        source=src,
        destination=dst,
        src_transform=field.transform,
        src_crs=field.crs,
        dst_transform=transform,
        dst_crs=crs,
        resampling=Resampling.nearest,
        src_nodata=nodata,
        dst_nodata=nodata,
    )
    if is_mask:
        data = np.ma.MaskedArray(dst == 1, mask=dst == 255)
    else:
        data = np.ma.masked_invalid(dst)
    return RasterField(
        name=field.name,
        data=data,
        unit=field.unit,
        transform=transform,
        crs=crs,
        period=field.period,
    )


def align_to(field: RasterField, reference: RasterField) -> RasterField:
    """Resample field onto reference's grid (nearest neighbour)."""
    if reference.transform is None or reference.crs is None:
        if field.shape == reference.shape and field.transform == reference.transform:
            return field
        raise ConfigurationError(f"Can't align {field.name} to {reference.name} without transform/CRS")
    return warp_to(field, reference.transform, reference.crs, reference.shape)
