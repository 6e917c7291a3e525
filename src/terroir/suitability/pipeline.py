#!/usr/bin/env python3
"""pipeline.py

Indicator pipelines: region -> raster source -> indicator -> suitability mask.

Every pipeline is a plain function `run_<name>(ctx) -> [IndicatorResult]`
registered in PIPELINES. They share nothing but the read-only PipelineContext
(config + source + region), so run_pipelines() can evaluate them in a thread
pool in any order.

Dataset ids refer to sources.yaml entries:
  terraclimate, era5_land_hourly, era5_land_monthly, landsat8_sr, srtm,
  soil_ph, landcover (+ boundaries / vineyards vectors used by the CLI)
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from terroir.config import AnalysisConfig
from terroir.errors import ConfigurationError
from terroir.features.indicators import (
    compute_elevation,
    compute_flavor_hours,
    compute_gdd,
    compute_gsp,
    compute_gst,
    compute_slope,
    compute_soil_ph,
    compute_solar_radiation,
    compute_spectral_indices,
)
from terroir.ingest.collection import ImageCollection
from terroir.ingest.raster_source import RasterSource
from terroir.raster import RasterField, align_to
from terroir.registry.boundary import Region
from terroir.suitability.combine import combine_masks
from terroir.suitability.evaluate import evaluate_bounds, evaluate_set, fill_nodata


# -----------------------------------------------------------------------------
# Rendering defaults (min / max / palette per layer)
# -----------------------------------------------------------------------------

DEFAULT_VIS: Dict[str, Dict[str, Any]] = {
    "GST": {"min": 10, "max": 20, "palette": ["blue", "green", "yellow", "red"], "mask_palette": ["green"]},
    "GDD": {"min": 500, "max": 1500, "palette": ["white", "red"], "mask_palette": ["green"]},
    "GSP": {"min": 200, "max": 700, "palette": ["white", "blue"], "mask_palette": ["blue"]},
    "FlavorHours": {"min": 0, "max": 1000, "palette": ["white", "orange"], "mask_palette": ["orange"]},
    "SoilPH": {"min": 4, "max": 8, "palette": ["#d7191c", "#fdae61", "#ffffbf", "#abdda4", "#2b83ba"],
               "mask_palette": ["00FF00"]},
    "NDVI": {"min": -0.2, "max": 0.8, "palette": ["brown", "white", "green"], "mask_palette": ["00FF00"]},
    "NDWI": {"min": -0.5, "max": 0.5, "palette": ["white", "blue"], "mask_palette": ["0000FF"]},
    "NDMI": {"min": -0.5, "max": 0.5, "palette": ["brown", "white", "blue"], "mask_palette": ["FFA500"]},
    "Slope": {"min": 0, "max": 10, "palette": ["lightblue", "green", "darkgreen"], "mask_palette": ["green"]},
    "Elevation": {"min": 50, "max": 220, "palette": ["lightblue", "yellow", "green"], "mask_palette": ["green"]},
    "SolarRadiation": {"min": 2700, "max": 6000, "palette": ["white", "yellow", "orange", "red"],
                       "mask_palette": ["orange"]},
    "LandCover": {"min": 1, "max": 21, "palette": ["green", "yellow", "grey", "blue"], "mask_palette": ["green"]},
    "Composite": {"min": 0, "max": 1, "palette": ["white", "purple"], "mask_palette": ["purple"]},
}


@dataclass
class IndicatorResult:
    """Continuous field + suitability mask for one indicator."""

    name: str
    field: RasterField
    mask: RasterField
    vis: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineContext:
    """Read-only inputs shared by every pipeline of a run."""

    config: AnalysisConfig
    source: RasterSource
    region: Region

    def collection(self, dataset_id: str) -> ImageCollection:
        """Collection for dataset_id restricted to the region."""
        return self.source.fetch_collection(dataset_id).filter_bounds(self.region.geometry, self.region.crs)

    def image(self, dataset_id: str, band: Optional[str] = None) -> RasterField:
        return self.source.fetch_image(dataset_id, band=band, region=self.region)

    def vis(self, name: str) -> Dict[str, Any]:
        merged = dict(DEFAULT_VIS.get(name, {}))
        merged.update(self.config.render.get(name, {}))
        return merged


def _result(ctx: PipelineContext, f: RasterField, mask: RasterField) -> IndicatorResult:
    return IndicatorResult(name=f.name, field=f, mask=mask, vis=ctx.vis(f.name))


# -----------------------------------------------------------------------------
# Pipelines
# -----------------------------------------------------------------------------

def run_gst(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    coll = ctx.collection("terraclimate").filter_date(*cfg.period)
    gst = compute_gst(coll, cfg.growing_months)
    return [_result(ctx, gst, evaluate_bounds(gst, cfg.gst))]


def run_gdd(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    coll = ctx.collection("terraclimate").filter_date(*cfg.period)
    gdd = compute_gdd(coll, cfg.gdd_base_temp, cfg.gdd_days_per_month, cfg.growing_months)
    return [_result(ctx, gdd, evaluate_bounds(gdd, cfg.gdd))]


def run_gsp(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    coll = ctx.collection("terraclimate").filter_date(*cfg.period)
    gsp = compute_gsp(coll, cfg.growing_months)
    return [_result(ctx, gsp, evaluate_bounds(gsp, cfg.gsp))]


def run_flavor_hours(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    band = cfg.flavor_temp
    if band.lower is None or band.upper is None:
        raise ConfigurationError("thresholds.flavor_temp needs both min and max")
    fh = compute_flavor_hours(ctx.collection("era5_land_hourly"), *cfg.flavor_window, band.lower, band.upper)
    return [_result(ctx, fh, evaluate_bounds(fh, cfg.flavor_hours))]


def run_soil_ph(ctx: PipelineContext) -> List[IndicatorResult]:
    ph = compute_soil_ph(ctx.image("soil_ph", band="b0"))
    return [_result(ctx, ph, evaluate_bounds(ph, ctx.config.soil_ph))]


def run_vegetation(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    coll = ctx.collection("landsat8_sr").filter_date(*cfg.period)
    indices = compute_spectral_indices(coll, cfg.max_cloud_cover)
    bounds = {"NDVI": cfg.ndvi, "NDWI": cfg.ndwi, "NDMI": cfg.ndmi}
    return [_result(ctx, f, evaluate_bounds(f, bounds[name])) for name, f in indices.items()]


def run_terrain(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    dem = ctx.image("srtm", band="elevation")
    slope = compute_slope(dem)
    elevation = compute_elevation(dem)
    return [
        _result(ctx, slope, evaluate_bounds(slope, cfg.slope)),
        _result(ctx, elevation, evaluate_bounds(elevation, cfg.elevation)),
    ]


def run_radiation(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    coll = ctx.collection("era5_land_monthly").filter_date(*cfg.period)
    rad = compute_solar_radiation(coll)
    return [_result(ctx, rad, evaluate_bounds(rad, cfg.radiation))]


def run_landcover(ctx: PipelineContext) -> List[IndicatorResult]:
    cfg = ctx.config
    raw = ctx.image("landcover")
    lc = raw.derive("LandCover", raw.data, unit="class")
    mask = evaluate_set(lc, cfg.landcover_codes)
    if cfg.landcover_nodata_unsuitable:
        # only pixels inside the region become unsuitable; outside stays no-data
        mask = fill_nodata(mask, False).clip(ctx.region.geometry, ctx.region.crs)
    return [_result(ctx, lc, mask)]


PIPELINES: Dict[str, Callable[[PipelineContext], List[IndicatorResult]]] = {
    "gst": run_gst,
    "gdd": run_gdd,
    "gsp": run_gsp,
    "flavor_hours": run_flavor_hours,
    "soil_ph": run_soil_ph,
    "vegetation": run_vegetation,
    "terrain": run_terrain,
    "radiation": run_radiation,
    "landcover": run_landcover,
}


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------

def _timed(name: str, fn: Callable[[PipelineContext], List[IndicatorResult]], ctx: PipelineContext):
    t0 = time.perf_counter()
    print(f"[{name}] start")
    out = fn(ctx)
    print(f"[{name}] done in {time.perf_counter() - t0:.1f}s ({', '.join(r.name for r in out)})")
    return out


def run_pipelines(
    ctx: PipelineContext,
    names: Optional[Sequence[str]] = None,
    max_workers: int = 4,
) -> List[IndicatorResult]:
    """Run the named pipelines (default: all) and return results in PIPELINES order.

    Pipelines run concurrently. On the first failure the source's cancel
    event is set so pending fetches stop early, and that error is re-raised.
    """
    names = list(PIPELINES) if not names else list(names)
    unknown = [n for n in names if n not in PIPELINES]
    if unknown:
        raise ConfigurationError(f"Unknown indicator pipeline(s) {unknown}. Known: {list(PIPELINES)}")
    ordered = [n for n in PIPELINES if n in names]

    results: Dict[str, List[IndicatorResult]] = {}
    first_error: Optional[BaseException] = None
    with ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as pool:
        futures = {pool.submit(_timed, n, PIPELINES[n], ctx): n for n in ordered}
        for fut in as_completed(futures):
            n = futures[fut]
            try:
                results[n] = fut.result()
            except Exception as e:
                if first_error is None:
                    first_error = e
                    ctx.source.cancel.set()
                print(f"[{n}] failed: {e}")
    if first_error is not None:
        raise first_error
    return [r for n in ordered for r in results[n]]


def composite_result(ctx: PipelineContext, results: Sequence[IndicatorResult]) -> IndicatorResult:
    """Combine every result's mask on the reference layer's grid."""
    if not results:
        raise ConfigurationError("No indicator results to combine")
    cfg = ctx.config
    by_name = {r.name: r for r in results}
    ref_name = cfg.composite_reference or results[0].name
    if ref_name not in by_name:
        raise ConfigurationError(f"composite.reference '{ref_name}' is not among results {list(by_name)}")
    reference = by_name[ref_name].mask
    masks = [align_to(r.mask, reference) for r in results]
    combined = combine_masks(masks, cfg.composite_method, cfg.composite_weights, cfg.composite_min_score)
    composite = combined.derive("Composite", combined.data)
    return IndicatorResult(name="Composite", field=composite, mask=composite, vis=ctx.vis("Composite"))
