#!/usr/bin/env python3
"""overlay.py

Quick-look PNG maps of indicator fields and suitability masks.

Design goals:
- Presentation only. Inputs are copied before anything is drawn, so a
  rendered field is bit-for-bit the field that was computed.
- Visualisation params use the same shape as the analysis layers:
  {"min": 10, "max": 20, "palette": ["blue", "green", "yellow", "red"]}.
  Palette entries may be matplotlib colour names or bare hex ("00FF00").
- A mask is painted only where it is True; False and no-data stay transparent.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np

# Force a non-interactive backend for headless environments
import matplotlib
matplotlib.use("Agg")  # renders directly to files, never touches a display
import matplotlib.pyplot as plt
from matplotlib.colors import Colormap, LinearSegmentedColormap, ListedColormap

from terroir.raster import RasterField

_BARE_HEX = re.compile(r"^[0-9A-Fa-f]{6}$")


def _color(c: str) -> str:
    c = str(c)
    return f"#{c}" if _BARE_HEX.match(c) else c


def palette_cmap(palette: Sequence[str], name: str = "palette") -> Colormap:
    """Colormap from a list of colours (a single colour gives a flat map)."""
    colors = [_color(c) for c in palette]
    if not colors:
        raise ValueError("palette needs at least one colour")
    if len(colors) == 1:
        return ListedColormap(colors, name=name)
    return LinearSegmentedColormap.from_list(name, colors)


def _extent(field: RasterField) -> Optional[Tuple[float, float, float, float]]:
    """(left, right, bottom, top) for imshow, or None without a transform."""
    t = field.transform
    if t is None:
        return None
    height, width = field.shape
    left, top = t.c, t.f
    right, bottom = left + t.a * width, top + t.e * height
    return (left, right, bottom, top)


def _draw_context(ax: Any, field: RasterField, region: Any, overlay: Optional[gpd.GeoDataFrame]) -> None:
    if field.crs is None:
        return
    if region is not None:
        outline = gpd.GeoSeries([region.geometry], crs=region.crs).to_crs(field.crs)
        outline.boundary.plot(ax=ax, color="red", linewidth=1)
    if overlay is not None and not overlay.empty:
        overlay.to_crs(field.crs).plot(ax=ax, color="purple", markersize=4, linewidth=0.5)


def _save(fig: Any, out_path: Path) -> Path:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    return out_path


def render_field(
    field: RasterField,
    vis: Dict[str, Any],
    out_path: Path,
    *,
    region: Any = None,
    overlay: Optional[gpd.GeoDataFrame] = None,
    title: Optional[str] = None,
) -> Path:
    """Paint a continuous field with vis = {min, max, palette}."""
    img = np.ma.array(field.data, dtype="float64", copy=True)
    cmap = palette_cmap(vis.get("palette", ["black", "white"]), name=field.name)
    vmin = vis.get("min")
    vmax = vis.get("max")

    fig, ax = plt.subplots(figsize=(6, 7))
    im = ax.imshow(img, cmap=cmap, vmin=vmin, vmax=vmax, extent=_extent(field), interpolation="nearest")
    _draw_context(ax, field, region, overlay)
    label = f"{field.name} ({field.unit})" if field.unit else field.name
    fig.colorbar(im, ax=ax, shrink=0.7, label=label)
    ax.set_title(title or field.name)
    return _save(fig, out_path)


def render_mask(
    mask: RasterField,
    out_path: Path,
    *,
    palette: Sequence[str] = ("green",),
    region: Any = None,
    overlay: Optional[gpd.GeoDataFrame] = None,
    title: Optional[str] = None,
) -> Path:
    """Paint only the suitable (True) pixels of a mask."""
    suitable = np.ma.getdata(mask.data).astype(bool) & mask.valid
    img = np.ma.masked_array(np.ones(mask.shape), mask=~suitable)

    fig, ax = plt.subplots(figsize=(6, 7))
    ax.imshow(img, cmap=palette_cmap(palette, name=mask.name), vmin=0, vmax=1,
              extent=_extent(mask), interpolation="nearest")
    _draw_context(ax, mask, region, overlay)
    ax.set_title(title or mask.name)
    return _save(fig, out_path)
