#!/usr/bin/env python3
"""boundary.py

Resolve the analysis boundary (one administrative unit) from a boundary
layer such as LSIB Simple (`country_na` column).

This module exposes:
1. resolve_region() - callable function for programmatic use / pipeline use
2. Region - the immutable result every downstream query is clipped to

Notes:
- Name matching ignores surrounding whitespace and case, so "united kingdom"
  and " United Kingdom " resolve to the same row.
- Exactly one matching row is required unless dissolve=True. Some boundary
  layers split a country over several rows; dissolving them is an explicit
  choice, not a silent default.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import geopandas as gpd
from shapely.geometry.base import BaseGeometry

from terroir.errors import AmbiguousRegionError, ConfigurationError, RegionNotFoundError

# World equal-area CRS (NSIDC EASE-Grid 2.0 Global) for area reporting.
DEFAULT_AREA_CRS = "EPSG:6933"


@dataclass(frozen=True)
class Region:
    name: str
    geometry: BaseGeometry
    crs: str
    area_km2: float

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(self.geometry.bounds)  # type: ignore[return-value]


# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------

def _normalize_name(x) -> str:
    """Normalize a unit name to a comparable string ('' for missing)."""
    if x is None:
        return ""
    return " ".join(str(x).split()).casefold()


def _make_valid(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Repair invalid geometries.

    geopandas >= 0.12 ships GeoSeries.make_valid(); older stacks fall back to
    the buffer(0) trick (works but can alter geometry slightly).
    """
    gdf = gdf.copy()
    if hasattr(gdf.geometry, "make_valid"):
        gdf["geometry"] = gdf.geometry.make_valid()
    else:
        gdf["geometry"] = gdf.geometry.buffer(0)
    return gdf


def _compute_area_km2(gdf: gpd.GeoDataFrame, area_crs: str = DEFAULT_AREA_CRS) -> float:
    """Total polygon area in km2 using an equal-area CRS."""
    return float(gdf.to_crs(area_crs).geometry.area.sum() / 1_000_000.0)


# -----------------------------------------------------------------------------
# Core function
# -----------------------------------------------------------------------------

def resolve_region(
    boundaries: Union[gpd.GeoDataFrame, Path],
    name: str,
    *,
    name_field: str = "country_na",
    dissolve: bool = False,
    target_crs: str = "EPSG:4326",
    area_crs: str = DEFAULT_AREA_CRS,
) -> Region:
    """Pick one administrative unit out of a boundary layer.

    Args:
        boundaries: GeoDataFrame or path readable by geopandas
        name: Unit name to look up (e.g. "United Kingdom")
        name_field: Column holding unit names (LSIB: country_na)
        dissolve: Merge several matching rows into one polygon instead of failing
        target_crs: CRS of the returned geometry
        area_crs: Equal-area CRS for the area figure

    Raises:
        RegionNotFoundError: no row matches
        AmbiguousRegionError: several rows match and dissolve is off
        ConfigurationError: missing file, missing column or missing CRS
    """
    if isinstance(boundaries, (str, Path)):
        if not Path(boundaries).exists():
            raise ConfigurationError(f"Boundary file not found: {boundaries}")
        gdf = gpd.read_file(boundaries)
    else:
        gdf = boundaries
    if gdf.geometry.name != "geometry":
        gdf = gdf.rename_geometry("geometry")

    if name_field not in gdf.columns:
        raise ConfigurationError(
            f"Boundary layer has no '{name_field}' column. Available columns: {list(gdf.columns)}"
        )
    if gdf.crs is None:
        raise ConfigurationError(
            "Boundary layer has no CRS (.prj missing or unreadable). "
            "Fix that first; every raster clip depends on it."
        )

    wanted = _normalize_name(name)
    matches = gdf[gdf[name_field].map(_normalize_name) == wanted]
    if matches.empty:
        sample = sorted({str(v) for v in gdf[name_field].dropna().unique()})[:25]
        raise RegionNotFoundError(
            f"No unit named '{name}' in column '{name_field}'.\n"
            f"Sample names: {sample}"
        )
    if len(matches) > 1 and not dissolve:
        raise AmbiguousRegionError(
            f"{len(matches)} units named '{name}' in column '{name_field}'. "
            "Set region.dissolve: true to merge them."
        )

    out = _make_valid(matches[[name_field, "geometry"]])
    out = out[~out.geometry.is_empty & out.geometry.notna()]
    if out.empty:
        raise RegionNotFoundError(f"Unit '{name}' has an empty geometry")
    unit_name = str(out[name_field].iloc[0])
    if len(out) > 1:
        # matched rows may differ in spelling; merge them all into one row
        out = out[["geometry"]].dissolve()

    area = _compute_area_km2(out, area_crs=area_crs)
    out = out.to_crs(target_crs)
    return Region(
        name=unit_name,
        geometry=out.geometry.iloc[0],
        crs=target_crs,
        area_km2=area,
    )
