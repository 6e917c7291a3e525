#!/usr/bin/env python3
"""terroir.registry

Region definition CLI for terroir.

This is one of several terroir subsystem CLIs:
- terroir.registry    → analysis boundary (this file)
- terroir.ingest      → dataset catalogue checks (verify, list)
- terroir.suitability → indicator pipelines, masks, composite, maps

terroir.registry is the source of truth for the analysis region. Every
raster query downstream is clipped to the polygon it resolves.

Responsibilities:
- Look up one administrative unit in the boundary layer (`boundaries` source)
- Repair and optionally dissolve its geometry
- Report area and bounds
- Optionally emit the resolved polygon as a GeoPackage

Design notes:
- Boundary names are matched case/whitespace-insensitively
- Several matching rows are an error unless --dissolve is passed
- Bounds are computed from the geometry, never typed into YAML

Examples:
  # Resolve the region configured in suitability.yaml
  python -m terroir.registry resolve-region

  # Another country, written out for QGIS
  python -m terroir.registry resolve-region --name France --out-gpkg data/interim/france.gpkg
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from terroir.config import (
    DEFAULT_ANALYSIS_YAML,
    DEFAULT_SOURCES_YAML,
    AnalysisConfig,
    format_bbox,
    load_analysis_config,
    load_yaml,
)
from terroir.errors import TerroirError


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for terroir.registry."""
    ap = argparse.ArgumentParser(
        prog="terroir.registry",
        description="Analysis region definition for terroir",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m terroir.registry     # Region definition (this)
  python -m terroir.ingest       # Dataset catalogue checks
  python -m terroir.suitability  # Indicator pipelines + maps
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})",
    )
    ap.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_ANALYSIS_YAML,
        help=f"Path to suitability YAML (default: {DEFAULT_ANALYSIS_YAML})",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Print planned actions without writing files",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )

    sub = ap.add_subparsers(dest="command", required=True)

    # --- resolve-region ---
    res = sub.add_parser(
        "resolve-region",
        help="Resolve the analysis boundary and print its area and bounds",
        description="""
Look up one unit in the boundary layer and report it.

The unit name and boundary column default to region.name / region.field
from the suitability YAML.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    res.add_argument("--name", default=None, help="Unit name (default: region.name from config)")
    res.add_argument("--field", default=None, help="Boundary column holding unit names (default: region.field)")
    res.add_argument(
        "--dissolve",
        action="store_true",
        default=None,
        help="Merge several matching rows instead of failing",
    )
    res.add_argument("--target-crs", default="EPSG:4326", help="Output CRS (default: EPSG:4326 / WGS84)")
    res.add_argument(
        "--area-crs",
        default="EPSG:6933",
        help="CRS for area calculations (default: EPSG:6933 / World EASE-Grid 2.0)",
    )
    res.add_argument("--out-gpkg", type=Path, default=None, help="Write the resolved polygon to this GeoPackage")
    res.add_argument("--layer", default="region", help="Layer name in output GeoPackage (default: region)")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _analysis_config(path: Path) -> AnalysisConfig:
    # The suitability YAML is optional for the registry; CLI flags can stand in.
    if path.exists():
        return load_analysis_config(path)
    return AnalysisConfig()


def _handle_resolve_region(args: argparse.Namespace) -> int:
    """Handle the resolve-region subcommand."""
    cfg = _analysis_config(args.config)
    name = args.name or cfg.region_name
    field = args.field or cfg.region_field
    dissolve = cfg.dissolve_region if args.dissolve is None else args.dissolve

    if args.dry_run:
        print("[dry-run] Would resolve region:")
        print(f"  Sources YAML: {args.sources_yaml}")
        print(f"  Name / field: {name} / {field}")
        print(f"  Dissolve: {dissolve}")
        print(f"  Output GeoPackage: {args.out_gpkg or '-'}")
        return 0

    # Lazy imports to keep CLI startup fast
    import geopandas as gpd

    from terroir.ingest.raster_source import RasterSource
    from terroir.registry.boundary import resolve_region

    source = RasterSource(load_yaml(args.sources_yaml))
    region = resolve_region(
        source.fetch_vector("boundaries"),
        name,
        name_field=field,
        dissolve=dissolve,
        target_crs=args.target_crs,
        area_crs=args.area_crs,
    )

    print(f"[REGION] {region.name}")
    print(f"  CRS: {region.crs}")
    print(f"  Area: {region.area_km2:,.1f} km2")
    print(f"  Bounds: {format_bbox(region.bounds)}")

    if args.out_gpkg is not None:
        if args.out_gpkg.exists() and not args.overwrite:
            print(f"[SKIP] {args.out_gpkg} exists (use --overwrite)")
            return 0
        out = gpd.GeoDataFrame(
            {"name": [region.name], "area_km2": [region.area_km2]},
            geometry=[region.geometry],
            crs=region.crs,
        )
        args.out_gpkg.parent.mkdir(parents=True, exist_ok=True)
        out.to_file(args.out_gpkg, layer=args.layer, driver="GPKG")
        print(f"Wrote region -> {args.out_gpkg} (layer={args.layer})")

    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    """Main entrypoint for terroir.registry CLI."""
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "resolve-region": _handle_resolve_region,
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
