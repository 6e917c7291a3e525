#!/usr/bin/env python3
"""raster_source.py

Dataset catalogue adapter: turns logical dataset ids from sources.yaml into
ImageCollections, static RasterFields and vector layers.

Source kinds (sources: -> <id> -> kind):
- collection: many GeoTIFF scenes, one timestamp each
    local_glob: data/raw/terraclimate/TerraClimate_*.tif   (or urls: [...])
    date_regex: "(?P<year>\\d{4})-(?P<month>\\d{2})"       (named groups year, month, [day], [hour])
    bands: [tmmx, tmmn, pr]                                 (band order inside each file)
    properties_sidecar: true                                (read <file>.json as scene properties)
- image: one static GeoTIFF
    path: data/raw/srtm/srtm_uk.tif
    bands: [elevation]
- vector: any file geopandas can read
    path: data/raw/boundaries/lsib_simple.gpkg

Remote paths (http/https) are read with GDAL /vsicurl/ window reads, so for
COGs only the region window ever leaves the server.
Local scenes carry their lon/lat footprint so filter_bounds drops tiles off
the region; remote tiles that miss the region are skipped at read time.
Remote reads are retried with exponential backoff; a shared threading.Event
cancels pending reads and backoff waits.

Required deps (typical conda geo stack): rasterio, numpy, pandas, geopandas
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import geopandas as gpd
import pandas as pd
import rasterio
import rasterio.mask
from rasterio.errors import RasterioIOError
from rasterio.warp import transform_bounds
from shapely.geometry import box, mapping
from shapely.geometry.base import BaseGeometry

from terroir.config import source_block
from terroir.errors import (
    ConfigurationError,
    EmptyResultError,
    FetchCancelledError,
    FetchError,
)
from terroir.ingest.collection import Bands, ImageCollection, Scene
from terroir.raster import RasterField, reproject_geometry

T = TypeVar("T")

DEFAULT_DATE_REGEX = r"(?P<year>\d{4})-?(?P<month>\d{2})(?:-?(?P<day>\d{2}))?(?:T(?P<hour>\d{2}))?"


def _is_remote(path: str) -> bool:
    return path.startswith(("http://", "https://", "/vsicurl/"))


def _vsi_url(path: str) -> str:
    """Force GDAL to use HTTP range requests (important for COG window reads)."""
    if path.startswith("http://") or path.startswith("https://"):
        return f"/vsicurl/{path}"
    return path


def _parse_timestamp(name: str, pattern: "re.Pattern[str]") -> pd.Timestamp:
    m = pattern.search(name)
    if not m:
        raise ConfigurationError(f"Can't parse a date from '{name}' with date_regex {pattern.pattern!r}")
    parts = m.groupdict()
    return pd.Timestamp(
        year=int(parts["year"]),
        month=int(parts["month"]),
        day=int(parts.get("day") or 1),
        hour=int(parts.get("hour") or 0),
    )


def _read_sidecar(path: Path) -> Dict[str, Any]:
    sidecar = path.with_suffix(".json")
    if not sidecar.exists():
        return {}
    with sidecar.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a JSON object in {sidecar}")
    return data


def _footprint(path: Path) -> Optional[BaseGeometry]:
    """lon/lat bounding box of a local raster (None when it has no CRS)."""
    with rasterio.open(path) as src:
        if src.crs is None:
            return None
        return box(*transform_bounds(src.crs, "EPSG:4326", *src.bounds))


def list_scenes(cfg: Dict[str, Any]) -> List[Scene]:
    """Enumerate the scenes of a collection block, sorted by time."""
    pattern = re.compile(str(cfg.get("date_regex", DEFAULT_DATE_REGEX)))
    band_names = tuple(str(b) for b in cfg.get("bands", []) or [])

    local_glob = cfg.get("local_glob")
    urls = cfg.get("urls")
    scenes: List[Scene] = []
    if isinstance(local_glob, str) and local_glob.strip():
        for p in sorted(Path().glob(local_glob)):
            props = _read_sidecar(p) if cfg.get("properties_sidecar") else {}
            scenes.append(Scene(
                timestamp=_parse_timestamp(p.name, pattern),
                properties=props,
                path=str(p),
                band_names=band_names,
                footprint=_footprint(p),
            ))
    elif isinstance(urls, list):
        for url in urls:
            url = str(url)
            scenes.append(Scene(
                timestamp=_parse_timestamp(url.rsplit("/", 1)[-1], pattern),
                path=url,
                band_names=band_names,
            ))
    else:
        raise ConfigurationError("collection source needs 'local_glob' or 'urls'")
    scenes.sort(key=lambda s: s.timestamp)
    return scenes


def _read_bands(
    src: Any,
    band_names: Tuple[str, ...],
    geometry: Optional[BaseGeometry],
    geometry_crs: Optional[str],
) -> Tuple[Bands, Any, str]:
    """Read every band of an open dataset, cropped + masked to geometry."""
    if src.crs is None:
        raise ConfigurationError(f"Raster has no CRS: {src.name}")
    if geometry is not None:
        geom = reproject_geometry(geometry, geometry_crs or "EPSG:4326", src.crs)
        try:
            data, transform = rasterio.mask.mask(src, [mapping(geom)], crop=True, filled=False)
        except ValueError as e:
            # rasterio raises ValueError when shapes and raster don't overlap
            raise EmptyResultError(f"{src.name}: region does not overlap raster ({e})") from e
    else:
        data = src.read(masked=True)
        transform = src.transform

    names = band_names or tuple(d or f"b{i + 1}" for i, d in enumerate(src.descriptions))
    if len(names) != data.shape[0]:
        raise ConfigurationError(
            f"{src.name}: {data.shape[0]} bands in file but {len(names)} band names configured"
        )
    return {n: data[i] for i, n in enumerate(names)}, transform, src.crs.to_string()


class RasterSource:
    """Resolve logical dataset ids into collections, images and vector layers."""

    def __init__(self, sources_yaml: Dict[str, Any], *, cancel: Optional[threading.Event] = None):
        self.sources_yaml = sources_yaml
        self.cancel = cancel or threading.Event()
        self._memory: Dict[str, Union[ImageCollection, RasterField, gpd.GeoDataFrame]] = {}

    # -------------------------------------------------------------------------
    # In-memory datasets
    # -------------------------------------------------------------------------

    def register(self, dataset_id: str, data: Union[ImageCollection, RasterField, gpd.GeoDataFrame]) -> None:
        """Serve `data` for dataset_id instead of the sources.yaml entry."""
        self._memory[dataset_id] = data

    def _memory_get(self, dataset_id: str, kind: type) -> Optional[Any]:
        data = self._memory.get(dataset_id)
        if data is None:
            return None
        if not isinstance(data, kind):
            raise ConfigurationError(
                f"Dataset '{dataset_id}' is a {type(data).__name__}, not a {kind.__name__}"
            )
        return data

    def _block(self, dataset_id: str, kind: str) -> Dict[str, Any]:
        cfg = source_block(self.sources_yaml, dataset_id)
        actual = cfg.get("kind", "collection")
        if actual != kind:
            raise ConfigurationError(f"Dataset '{dataset_id}' is kind '{actual}', expected '{kind}'")
        return cfg

    # -------------------------------------------------------------------------
    # Remote-safe open with retry
    # -------------------------------------------------------------------------

    def _open(self, path: str, cfg: Dict[str, Any], fn: Callable[[Any], T]) -> T:
        """Open path with rasterio and apply fn, retrying transient remote failures."""
        remote = _is_remote(path)
        retries = int(cfg.get("retries", 3)) if remote else 1
        backoff = float(cfg.get("backoff", 1.5))
        env_opts = {
            "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
            "CPL_VSIL_CURL_ALLOWED_EXTENSIONS": ".tif",
            "GDAL_HTTP_TIMEOUT": str(int(cfg.get("timeout", 60))),
        }
        for attempt in range(1, retries + 1):
            if self.cancel.is_set():
                raise FetchCancelledError(f"Cancelled before reading {path}")
            try:
                with rasterio.Env(**env_opts):
                    with rasterio.open(_vsi_url(path)) as src:
                        return fn(src)
            except RasterioIOError as e:
                if attempt >= retries:
                    raise FetchError(f"Failed to read {path} after {attempt} attempt(s): {e}") from e
                delay = backoff ** (attempt - 1)
                print(f"[FETCH] {path}: {e}; retrying in {delay:.1f}s ({attempt}/{retries - 1})")
                if self.cancel.wait(delay):
                    raise FetchCancelledError(f"Cancelled while retrying {path}") from e
        raise FetchError(f"Failed to read {path}")

    # -------------------------------------------------------------------------
    # Public fetch API
    # -------------------------------------------------------------------------

    def fetch_collection(self, dataset_id: str) -> ImageCollection:
        """Unfiltered collection for dataset_id (pixels are read lazily)."""
        mem = self._memory_get(dataset_id, ImageCollection)
        if mem is not None:
            return mem
        cfg = self._block(dataset_id, "collection")
        scenes = list_scenes(cfg)

        def reader(scene: Scene, geometry: Optional[BaseGeometry], geometry_crs: Optional[str]):
            if scene.path is None:
                raise ConfigurationError(f"{dataset_id}: scene {scene.timestamp} has no path")
            return self._open(
                scene.path, cfg, lambda src: _read_bands(src, scene.band_names, geometry, geometry_crs)
            )

        return ImageCollection(dataset_id=dataset_id, scenes=tuple(scenes), reader=reader)

    def fetch_image(self, dataset_id: str, band: Optional[str] = None, region: Any = None) -> RasterField:
        """Static raster as a RasterField, clipped to region (anything with .geometry and .crs)."""
        geometry = getattr(region, "geometry", None)
        geometry_crs = getattr(region, "crs", None)

        mem = self._memory_get(dataset_id, RasterField)
        if mem is not None:
            if band is not None and band != mem.name:
                raise ConfigurationError(f"{dataset_id}: unknown band '{band}'. Available: ['{mem.name}']")
            return mem.clip(geometry, geometry_crs) if geometry is not None else mem

        cfg = self._block(dataset_id, "image")
        path = cfg.get("path")
        if not path:
            raise ConfigurationError(f"Dataset '{dataset_id}' is missing path")
        band_names = tuple(str(b) for b in cfg.get("bands", []) or [])
        bands, transform, crs = self._open(
            str(path), cfg, lambda src: _read_bands(src, band_names, geometry, geometry_crs)
        )
        if band is None:
            band = next(iter(bands))
        if band not in bands:
            raise ConfigurationError(f"{dataset_id}: unknown band '{band}'. Available: {sorted(bands)}")
        return RasterField(name=band, data=bands[band], transform=transform, crs=crs)

    def fetch_vector(self, dataset_id: str) -> gpd.GeoDataFrame:
        """Vector layer (boundaries, existing vineyards) as a GeoDataFrame."""
        mem = self._memory_get(dataset_id, gpd.GeoDataFrame)
        if mem is not None:
            return mem
        cfg = self._block(dataset_id, "vector")
        path = cfg.get("path")
        if not path:
            raise ConfigurationError(f"Dataset '{dataset_id}' is missing path")
        if not _is_remote(str(path)) and not Path(path).exists():
            raise ConfigurationError(f"Vector file not found for '{dataset_id}': {path}")
        kwargs = {"layer": cfg["layer"]} if cfg.get("layer") else {}
        return gpd.read_file(path, **kwargs)


