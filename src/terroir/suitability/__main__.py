#!/usr/bin/env python3
"""terroir.suitability

Vineyard suitability CLI for terroir.

This is one of several terroir subsystem CLIs:
- terroir.registry    → analysis boundary (resolve-region)
- terroir.ingest      → dataset catalogue checks (verify, list)
- terroir.suitability → indicator pipelines, masks, composite, maps (this file)

What `run` does, per indicator pipeline:
  region (boundaries) → collection/image → indicator field → suitability mask
then combines every mask into a composite layer and writes

  <out-dir>/<Layer>.png            continuous field, palette from config
  <out-dir>/<Layer>_suitable.png   mask, suitable pixels only
  <out-dir>/Composite.png
  <out-dir>/summary.csv            per-layer stats + suitable fraction
  <out-dir>/<Layer>.tif            with --geotiff

Existing vineyards (`vineyards` source, when configured) are drawn on top
of every map.

Examples:
  # Everything, with defaults from config/
  python -m terroir.suitability run

  # Climate only, machine-readable summary
  python -m terroir.suitability run --indicators gst gdd gsp --no-render --json

  # Show thresholds and pipelines without touching data
  python -m terroir.suitability describe
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from terroir.config import (
    DEFAULT_ANALYSIS_YAML,
    DEFAULT_OUT_DIR,
    DEFAULT_SOURCES_YAML,
    AnalysisConfig,
    load_analysis_config,
    load_yaml,
)
from terroir.errors import TerroirError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for terroir.suitability."""
    ap = argparse.ArgumentParser(
        prog="terroir.suitability",
        description="Vineyard agro-climatic suitability for terroir",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML,
                    help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--config", type=Path, default=DEFAULT_ANALYSIS_YAML,
                    help=f"Path to suitability YAML (default: {DEFAULT_ANALYSIS_YAML})")
    ap.add_argument("--out-dir", type=Path, default=DEFAULT_OUT_DIR,
                    help=f"Output directory (default: {DEFAULT_OUT_DIR})")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without reading data")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing GeoTIFFs")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- run ---
    run = sub.add_parser("run", help="Run indicator pipelines, composite, and write maps")
    run.add_argument("--indicators", nargs="+", default=None,
                     help="Pipelines to run (default: all; see `describe`)")
    run.add_argument("--workers", type=int, default=4, help="Parallel pipelines (default: 4)")
    run.add_argument("--no-render", action="store_true", help="Skip PNG rendering")
    run.add_argument("--geotiff", action="store_true", help="Also write every layer as GeoTIFF")
    run.add_argument("--json", action="store_true", help="Emit the summary as JSON to stdout")

    # --- describe ---
    sub.add_parser("describe", help="Print the resolved configuration and available pipelines")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _describe_config(cfg: AnalysisConfig) -> Dict[str, Any]:
    def _b(b):
        return {"min": b.lower, "max": b.upper, "inclusive": b.inclusive}

    return {
        "region": {"name": cfg.region_name, "field": cfg.region_field, "dissolve": cfg.dissolve_region},
        "period": list(cfg.period),
        "growing_months": list(cfg.growing_months),
        "thresholds": {
            key: _b(getattr(cfg, key))
            for key in ("gst", "gdd", "gsp", "flavor_temp", "flavor_hours", "soil_ph",
                        "ndvi", "ndwi", "ndmi", "slope", "elevation", "radiation")
        },
        "gdd": {"base_temp": cfg.gdd_base_temp, "days_per_month": cfg.gdd_days_per_month},
        "flavor_window": list(cfg.flavor_window),
        "max_cloud_cover": cfg.max_cloud_cover,
        "landcover": {"codes": list(cfg.landcover_codes), "nodata_unsuitable": cfg.landcover_nodata_unsuitable},
        "composite": {
            "method": cfg.composite_method,
            "weights": dict(cfg.composite_weights),
            "min_score": cfg.composite_min_score,
            "reference": cfg.composite_reference,
        },
    }


def _handle_describe(args: argparse.Namespace) -> int:
    from terroir.suitability.pipeline import PIPELINES

    cfg = load_analysis_config(args.config)
    print(json.dumps({"config": _describe_config(cfg), "pipelines": list(PIPELINES)}, indent=2))
    return 0


def _load_overlay(source: Any, sources_yaml: Dict[str, Any]):
    """Existing vineyards layer, or None when the catalogue has no `vineyards` entry."""
    if "vineyards" not in (sources_yaml.get("sources") or {}):
        return None
    return source.fetch_vector("vineyards")


def _handle_run(args: argparse.Namespace) -> int:
    cfg = load_analysis_config(args.config)
    sources_yaml = load_yaml(args.sources_yaml)

    # Lazy imports (rasterio / geopandas / matplotlib are slow to import)
    from terroir.ingest.raster_source import RasterSource
    from terroir.registry.boundary import resolve_region
    from terroir.suitability.pipeline import PIPELINES, PipelineContext, composite_result, run_pipelines
    from terroir.suitability.summary import field_stats, mask_fraction, summary_table

    names = args.indicators or list(PIPELINES)
    if args.dry_run:
        print("[dry-run] Would run suitability:")
        print(f"  Region: {cfg.region_name} ({cfg.region_field})")
        print(f"  Period: {cfg.period[0]} .. {cfg.period[1]}")
        print(f"  Pipelines: {names}")
        print(f"  Composite: {cfg.composite_method}")
        print(f"  Output dir: {args.out_dir}")
        return 0

    source = RasterSource(sources_yaml)
    region = resolve_region(
        source.fetch_vector("boundaries"),
        cfg.region_name,
        name_field=cfg.region_field,
        dissolve=cfg.dissolve_region,
    )
    print(f"[REGION] {region.name}: {region.area_km2:,.1f} km2")

    ctx = PipelineContext(config=cfg, source=source, region=region)
    results = run_pipelines(ctx, names, max_workers=args.workers)
    composite = composite_result(ctx, results)
    print(f"[COMPOSITE] {cfg.composite_method} over {len(results)} layer(s)")

    rows: List[Dict[str, Any]] = []
    for r in results:
        rows.append({"indicator": r.name, "unit": r.field.unit, **field_stats(r.field), **mask_fraction(r.mask)})
    if composite.mask.data.dtype == bool:
        rows.append({"indicator": composite.name, "unit": "bool", **mask_fraction(composite.mask)})
    else:
        rows.append({"indicator": composite.name, "unit": "score", **field_stats(composite.field)})
    table = summary_table(rows)

    if not args.no_render:
        from terroir.render.overlay import render_field, render_mask

        overlay = _load_overlay(source, sources_yaml)
        for r in results:
            render_field(r.field, r.vis, args.out_dir / f"{r.name}.png", region=region, overlay=overlay)
            render_mask(r.mask, args.out_dir / f"{r.name}_suitable.png",
                        palette=r.vis.get("mask_palette", ["green"]), region=region, overlay=overlay,
                        title=f"{r.name} suitable")
        out_png = args.out_dir / "Composite.png"
        if composite.mask.data.dtype == bool:
            render_mask(composite.mask, out_png, palette=composite.vis.get("mask_palette", ["purple"]),
                        region=region, overlay=overlay, title="Composite suitability")
        else:
            render_field(composite.field, composite.vis, out_png, region=region, overlay=overlay,
                         title="Composite score")
        print(f"[RENDER] {2 * len(results) + 1} map(s) -> {args.out_dir}")

    if args.geotiff:
        from terroir.suitability.export import write_geotiff

        written = 0
        for r in results:
            written += write_geotiff(r.field, args.out_dir / f"{r.name}.tif", overwrite=args.overwrite)
            written += write_geotiff(r.mask, args.out_dir / f"{r.name}_suitable.tif", overwrite=args.overwrite)
        written += write_geotiff(composite.field, args.out_dir / "Composite.tif", overwrite=args.overwrite)
        print(f"[GEOTIFF] wrote {written} file(s) -> {args.out_dir}")

    args.out_dir.mkdir(parents=True, exist_ok=True)
    table.to_csv(args.out_dir / "summary.csv", index=False)

    if args.json:
        print(json.dumps({"region": region.name, "layers": rows}, indent=2))
    else:
        print(table.to_string(index=False))
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for terroir.suitability CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "run": _handle_run,
        "describe": _handle_describe,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        return handler(args)
    except TerroirError as e:
        raise SystemExit(str(e)) from e


if __name__ == "__main__":
    raise SystemExit(main())
