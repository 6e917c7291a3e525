#!/usr/bin/env python3
"""collection.py

Time-ordered stacks of raster scenes, with the narrowing and reduction
operations every indicator pipeline is built from.

An ImageCollection is immutable. Filters (bounds, date, calendar month,
property) return a new collection and only look at scene metadata, so they
commute: the order they are chained in never changes the resulting scene set.
Band operations (`select`, `map`) are recorded in order and applied per scene
when pixels are read, which happens only in `stack()` / `reduce()`.

Pixels are read through a `reader` callable so the same collection type
serves GeoTIFF scenes (see raster_source.py) and in-memory arrays (tests).
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from rasterio.transform import Affine
from shapely.geometry.base import BaseGeometry

from terroir.errors import ConfigurationError, EmptyResultError
from terroir.raster import RasterField, as_masked, reproject_geometry, union_grid, warp_to

Bands = Dict[str, np.ma.MaskedArray]
# reader(scene, geometry, geometry_crs) -> (bands, transform, crs)
Reader = Callable[["Scene", Optional[BaseGeometry], Optional[str]], Tuple[Bands, Optional[Affine], Optional[str]]]

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
    "eq": operator.eq,
    "neq": operator.ne,
}

REDUCERS = ("mean", "sum", "median", "count")


@dataclass(frozen=True)
class Scene:
    """One timestamped snapshot: in-memory bands or a GeoTIFF path."""

    timestamp: pd.Timestamp
    properties: Mapping[str, Any] = field(default_factory=dict)
    bands: Optional[Mapping[str, Any]] = None
    path: Optional[str] = None
    band_names: Tuple[str, ...] = ()
    footprint: Optional[BaseGeometry] = None  # lon/lat, when known

    @classmethod
    def from_arrays(cls, timestamp: Any, bands: Mapping[str, Any], **properties: Any) -> "Scene":
        return cls(timestamp=pd.Timestamp(timestamp), properties=dict(properties), bands=dict(bands))


def read_in_memory(
    scene: Scene,
    transform: Optional[Affine],
    crs: Optional[str],
    geometry: Optional[BaseGeometry],
    geometry_crs: Optional[str],
) -> Tuple[Bands, Optional[Affine], Optional[str]]:
    """Reader for Scene.bands; clips by masking (no crop) when a geometry is set."""
    if scene.bands is None:
        raise ConfigurationError(f"Scene {scene.timestamp} has no in-memory bands")
    out: Bands = {}
    for name, arr in scene.bands.items():
        f = RasterField(name=name, data=arr, transform=transform, crs=crs)
        if geometry is not None and transform is not None:
            f = f.clip(geometry, geometry_crs)
        out[name] = f.data
    return out, transform, crs


@dataclass(frozen=True)
class ImageCollection:
    dataset_id: str
    scenes: Tuple[Scene, ...]
    reader: Optional[Reader] = None
    transform: Optional[Affine] = None
    crs: Optional[str] = None
    geometry: Optional[BaseGeometry] = None
    geometry_crs: Optional[str] = None
    date_range: Optional[Tuple[pd.Timestamp, pd.Timestamp]] = None
    ops: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def from_scenes(
        cls,
        dataset_id: str,
        scenes: Sequence[Scene],
        *,
        transform: Optional[Affine] = None,
        crs: Optional[str] = None,
    ) -> "ImageCollection":
        """In-memory collection; scenes are kept sorted by timestamp."""
        ordered = tuple(sorted(scenes, key=lambda s: s.timestamp))
        return cls(dataset_id=dataset_id, scenes=ordered, transform=transform, crs=crs)

    def __len__(self) -> int:
        return len(self.scenes)

    @property
    def timestamps(self) -> pd.DatetimeIndex:
        return pd.DatetimeIndex([s.timestamp for s in self.scenes])

    # -------------------------------------------------------------------------
    # Narrowing filters (metadata only, commutative)
    # -------------------------------------------------------------------------

    def _keep(self, pred: Callable[[Scene], bool], **changes: Any) -> "ImageCollection":
        return replace(self, scenes=tuple(s for s in self.scenes if pred(s)), **changes)

    def filter_bounds(self, geometry: BaseGeometry, crs: str = "EPSG:4326") -> "ImageCollection":
        """Restrict to scenes touching geometry and clip pixels to it."""
        if self.geometry is not None:
            geometry = reproject_geometry(geometry, crs, self.geometry_crs).intersection(self.geometry)
            crs = self.geometry_crs
        lonlat = reproject_geometry(geometry, crs, "EPSG:4326")
        return self._keep(
            lambda s: s.footprint is None or s.footprint.intersects(lonlat),
            geometry=geometry,
            geometry_crs=crs,
        )

    def filter_date(self, start: Any, end: Any) -> "ImageCollection":
        """Keep scenes with start <= timestamp < end."""
        start, end = pd.Timestamp(start), pd.Timestamp(end)
        if start >= end:
            raise ConfigurationError(f"filter_date: start {start} must precede end {end}")
        if self.date_range is not None:
            start, end = max(start, self.date_range[0]), min(end, self.date_range[1])
        return self._keep(lambda s: start <= s.timestamp < end, date_range=(start, end))

    def filter_calendar_month(self, first: int, last: int) -> "ImageCollection":
        """Keep scenes whose month is in [first, last]; wraps when first > last."""
        if not (1 <= first <= 12 and 1 <= last <= 12):
            raise ConfigurationError(f"filter_calendar_month: months must be 1..12, got {first}, {last}")
        if first <= last:
            return self._keep(lambda s: first <= s.timestamp.month <= last)
        return self._keep(lambda s: s.timestamp.month >= first or s.timestamp.month <= last)

    def filter_property(self, name: str, op: str, value: Any) -> "ImageCollection":
        """Keep scenes where `properties[name] <op> value`; scenes lacking it are dropped."""
        if op not in _OPERATORS:
            raise ConfigurationError(f"Unknown filter operator '{op}'. Known: {sorted(_OPERATORS)}")
        cmp = _OPERATORS[op]
        return self._keep(lambda s: name in s.properties and cmp(s.properties[name], value))

    # -------------------------------------------------------------------------
    # Band operations (applied per scene at read time, in order)
    # -------------------------------------------------------------------------

    def select(self, bands: Sequence[str]) -> "ImageCollection":
        if isinstance(bands, str):
            bands = [bands]
        return replace(self, ops=self.ops + (("select", tuple(bands)),))

    def map(self, fn: Callable[[Bands], Bands]) -> "ImageCollection":
        """Apply fn(bands) -> bands to every scene. The result replaces the scene's bands."""
        return replace(self, ops=self.ops + (("map", fn),))

    # -------------------------------------------------------------------------
    # Materialization
    # -------------------------------------------------------------------------

    def _read(self, scene: Scene) -> Tuple[Bands, Optional[Affine], Optional[str]]:
        if self.reader is not None:
            bands, transform, crs = self.reader(scene, self.geometry, self.geometry_crs)
        else:
            bands, transform, crs = read_in_memory(scene, self.transform, self.crs, self.geometry, self.geometry_crs)
        bands = {k: as_masked(v) for k, v in bands.items()}
        for kind, arg in self.ops:
            if kind == "select":
                missing = [b for b in arg if b not in bands]
                if missing:
                    raise ConfigurationError(
                        f"{self.dataset_id}: unknown band(s) {missing}. Available: {sorted(bands)}"
                    )
                bands = {b: bands[b] for b in arg}
            else:
                bands = {k: as_masked(v) for k, v in arg(bands).items()}
        return bands, transform, crs

    def _require_scenes(self) -> None:
        if not self.scenes:
            window = ""
            if self.date_range is not None:
                window = f" in [{self.date_range[0].date()}, {self.date_range[1].date()})"
            raise EmptyResultError(f"{self.dataset_id}: no scenes left after filtering{window}")

    def stack_bands(
        self, bands: Sequence[str]
    ) -> Tuple[Dict[str, np.ma.MaskedArray], Optional[Affine], Optional[str]]:
        """Read several bands into (time, y, x) masked arrays, one pass over the scenes.

        Scenes that miss the region entirely are skipped. Scenes on different
        grids (e.g. adjacent tiles) are warped onto one grid covering them all,
        so the time axis becomes a mosaic.
        """
        self._require_scenes()
        reads = []
        for scene in self.scenes:
            try:
                scene_bands, transform, crs = self._read(scene)
            except EmptyResultError as e:
                print(f"[SKIP] {self.dataset_id} {scene.timestamp}: {e}")
                continue
            missing = [b for b in bands if b not in scene_bands]
            if missing:
                raise ConfigurationError(
                    f"{self.dataset_id}: unknown band(s) {missing}. Available: {sorted(scene_bands)}"
                )
            reads.append(({b: scene_bands[b] for b in bands}, transform, crs))
        if not reads:
            raise EmptyResultError(f"{self.dataset_id}: no scene overlaps the region")

        first_bands, transform, crs = reads[0]
        shape = first_bands[bands[0]].shape
        grids = [(layers[bands[0]].shape, t, c) for layers, t, c in reads]
        if any(g != (shape, transform, crs) for g in grids):
            if any(t is None or c is None for _, t, c in grids):
                raise ConfigurationError(
                    f"{self.dataset_id}: scenes are on different grids {sorted({g[0] for g in grids})}"
                )
            shape, transform, crs = union_grid(grids)
            reads = [
                ({b: warp_to(RasterField(name=b, data=a, transform=t, crs=c), transform, crs, shape).data
                  for b, a in layers.items()}, transform, crs)
                for layers, t, c in reads
            ]
        return {b: np.ma.stack([layers[b] for layers, _, _ in reads], axis=0) for b in bands}, transform, crs

    def stack(self, band: str) -> Tuple[np.ma.MaskedArray, Optional[Affine], Optional[str]]:
        """Read `band` from every scene into a (time, y, x) masked array."""
        stacks, transform, crs = self.stack_bands([band])
        return stacks[band], transform, crs

    def _field(self, name: str, data: Any, unit: str, transform: Optional[Affine], crs: Optional[str]) -> RasterField:
        period = None
        if self.date_range is not None:
            period = (str(self.date_range[0].date()), str(self.date_range[1].date()))
        return RasterField(name=name, data=np.ma.asarray(data), unit=unit, transform=transform, crs=crs, period=period)

    def reduce(self, band: str, reducer: str, *, name: Optional[str] = None, unit: str = "") -> RasterField:
        """Collapse the time axis of `band` with mean/sum/median/count.

        Pixels masked in every scene stay masked (count gives 0 there).
        """
        return self.reduce_bands([band], reducer, unit=unit, names={band: name or band})[band]

    def reduce_bands(
        self,
        bands: Sequence[str],
        reducer: str,
        *,
        unit: str = "",
        names: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, RasterField]:
        """Like reduce(), for several bands read in a single pass."""
        if reducer not in REDUCERS:
            raise ConfigurationError(f"Unknown reducer '{reducer}'. Known: {list(REDUCERS)}")
        bands = list(bands)
        names = names or {}
        stacks, transform, crs = self.stack_bands(bands)
        return {
            b: self._field(names.get(b, b), _reduce(stacks[b], reducer), unit, transform, crs)
            for b in bands
        }


def _reduce(stack: np.ma.MaskedArray, reducer: str) -> np.ma.MaskedArray:
    if reducer == "mean":
        return stack.astype("float64").mean(axis=0)
    if reducer == "sum":
        return stack.sum(axis=0)
    if reducer == "median":
        return np.ma.median(stack.astype("float64"), axis=0)
    return np.ma.MaskedArray(stack.count(axis=0))
