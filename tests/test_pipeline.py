#!/usr/bin/env python3

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from terroir.config import AnalysisConfig, Bounds
from terroir.errors import ConfigurationError
from terroir.ingest.collection import ImageCollection, Scene
from terroir.ingest.raster_source import RasterSource
from terroir.raster import RasterField
from terroir.registry.boundary import Region
from terroir.suitability import pipeline as pl

GRID = from_origin(-2.0, 52.0, 0.5, 0.5)  # 2x2 pixels over [-2, -1] x [51, 52]
CRS = "EPSG:4326"


def _terraclimate():
    # Pixel (0, 0): tmean 15 every month; pixel (0, 1): tmean 20; row 1: tmean 5
    tmean = np.array([[15.0, 20.0], [5.0, 5.0]])
    scenes = [
        Scene.from_arrays(f"{year}-{m:02d}-01", {"tmmx": tmean * 10, "tmmn": tmean * 10, "pr": np.full((2, 2), 50.0)})
        for year in (2023, 2024)
        for m in range(1, 13)
    ]
    return ImageCollection.from_scenes("terraclimate", scenes, transform=GRID, crs=CRS)


@pytest.fixture
def ctx():
    source = RasterSource({"sources": {}})
    source.register("terraclimate", _terraclimate())
    source.register("soil_ph", RasterField(name="b0", data=np.array([[70, 60], [80, 69]]), transform=GRID, crs=CRS))
    source.register(
        "landcover",
        RasterField(name="landcover", data=np.ma.MaskedArray([[8, 10], [1, 0]], mask=[[False, False], [False, True]]),
                    transform=GRID, crs=CRS),
    )
    region = Region(name="Testland", geometry=box(-3, 50, 0, 53), crs=CRS, area_km2=1.0)
    return pl.PipelineContext(config=AnalysisConfig(), source=source, region=region)


def test_pipeline_registry_covers_every_indicator_group():
    assert list(pl.PIPELINES) == [
        "gst", "gdd", "gsp", "flavor_hours", "soil_ph", "vegetation", "terrain", "radiation", "landcover",
    ]


def test_climate_pipelines_use_analysis_year(ctx):
    results = pl.run_pipelines(ctx, ["gsp", "gst"], max_workers=2)
    assert [r.name for r in results] == ["GST", "GSP"]
    gst, gsp = results
    assert np.ma.getdata(gst.field.data).tolist() == pytest.approx([[15.0, 20.0], [5.0, 5.0]])
    assert gst.mask.data.tolist() == [[True, False], [False, False]]
    # Seven growing-season months of 2024 only
    assert float(gsp.field.data[0, 0]) == pytest.approx(350.0)
    assert gsp.field.period == ("2024-01-01", "2025-01-01")


def test_results_carry_render_params(ctx):
    ctx = replace(ctx, config=replace(ctx.config, render={"GST": {"min": 8}}))
    (gst,) = pl.run_gst(ctx)
    assert gst.vis["min"] == 8
    assert gst.vis["max"] == 20
    assert gst.vis["mask_palette"] == ["green"]


def test_soil_ph_and_landcover(ctx):
    ph, lc = pl.run_pipelines(ctx, ["landcover", "soil_ph"])
    assert ph.name == "SoilPH"
    assert ph.mask.data.tolist() == [[True, False], [False, True]]
    assert lc.name == "LandCover"
    # no-data land cover is resolved as unsuitable
    assert not np.ma.getmaskarray(lc.mask.data).any()
    assert lc.mask.data.tolist() == [[False, True], [True, False]]


def test_landcover_nodata_can_stay_nodata(ctx):
    ctx = replace(ctx, config=replace(ctx.config, landcover_nodata_unsuitable=False))
    (lc,) = pl.run_landcover(ctx)
    assert np.ma.getmaskarray(lc.mask.data).tolist() == [[False, False], [False, True]]


def test_landcover_outside_region_stays_nodata(ctx):
    ctx.source.register("landcover", RasterField(name="landcover", data=np.ones((2, 2), dtype="int16"),
                                                 transform=GRID, crs=CRS))
    # region covers pixel (0, 0) only
    ctx = replace(ctx, region=Region(name="Corner", geometry=box(-2, 51.5, -1.5, 52), crs=CRS, area_km2=1.0))
    (lc,) = pl.run_landcover(ctx)
    assert np.ma.getmaskarray(lc.field.data).tolist() == [[False, True], [True, True]]
    assert np.ma.getmaskarray(lc.mask.data).tolist() == [[False, True], [True, True]]
    assert bool(lc.mask.data[0, 0]) is True


def test_flavor_hours_needs_two_sided_band(ctx):
    ctx = replace(ctx, config=replace(ctx.config, flavor_temp=Bounds(lower=16.0)))
    with pytest.raises(ConfigurationError):
        pl.run_flavor_hours(ctx)


def test_unknown_pipeline(ctx):
    with pytest.raises(ConfigurationError):
        pl.run_pipelines(ctx, ["gst", "chirps"])


def test_failure_cancels_pending_fetches(ctx):
    # landsat8_sr is neither registered nor in sources.yaml
    with pytest.raises(ConfigurationError, match="landsat8_sr"):
        pl.run_pipelines(ctx, ["gst", "vegetation"])
    assert ctx.source.cancel.is_set()


def test_composite_intersects_masks(ctx):
    results = pl.run_pipelines(ctx, ["gst", "soil_ph", "landcover"])
    comp = pl.composite_result(ctx, results)
    assert comp.name == "Composite"
    # GST only passes at (0, 0), where land cover 8 is excluded
    assert comp.mask.data.tolist() == [[False, False], [False, False]]


def test_weighted_composite(ctx):
    cfg = replace(ctx.config, composite_method="weighted", composite_weights={"GST": 2.0})
    ctx = replace(ctx, config=cfg)
    results = pl.run_pipelines(ctx, ["gst", "soil_ph"])
    comp = pl.composite_result(ctx, results)
    # (0, 0): GST and pH pass; (1, 1): only pH passes
    assert float(comp.field.data[0, 0]) == pytest.approx(1.0)
    assert float(comp.field.data[1, 1]) == pytest.approx(1.0 / 3.0)


def test_composite_reference_must_be_a_result(ctx):
    ctx = replace(ctx, config=replace(ctx.config, composite_reference="NDVI"))
    results = pl.run_pipelines(ctx, ["gst"])
    with pytest.raises(ConfigurationError):
        pl.composite_result(ctx, results)


def test_all_pipelines_end_to_end(ctx):
    import pandas as pd

    from terroir.features.indicators import KELVIN_OFFSET, LANDSAT_SR_OFFSET, LANDSAT_SR_SCALE

    t0 = pd.Timestamp("2024-07-20")
    hourly = [
        Scene.from_arrays(t0 + pd.Timedelta(hours=i), {"temperature_2m": np.full((2, 2), 18.0 + KELVIN_OFFSET)})
        for i in range(3)
    ]
    ctx.source.register("era5_land_hourly", ImageCollection.from_scenes("era5_land_hourly", hourly, transform=GRID, crs=CRS))

    monthly = [
        Scene.from_arrays(f"2024-{m:02d}-01", {"surface_net_solar_radiation_sum": np.full((2, 2), 3.0e8)})
        for m in range(1, 13)
    ]
    ctx.source.register("era5_land_monthly", ImageCollection.from_scenes("era5_land_monthly", monthly, transform=GRID, crs=CRS))

    def dn(r):
        return np.full((2, 2), (r - LANDSAT_SR_OFFSET) / LANDSAT_SR_SCALE)

    landsat = [
        Scene.from_arrays("2024-06-01", {"SR_B3": dn(0.05), "SR_B4": dn(0.05), "SR_B5": dn(0.4), "SR_B6": dn(0.1)},
                          CLOUD_COVER=10),
    ]
    ctx.source.register("landsat8_sr", ImageCollection.from_scenes("landsat8_sr", landsat, transform=GRID, crs=CRS))
    ctx.source.register("srtm", RasterField(name="elevation", data=np.full((2, 2), 100.0), transform=GRID, crs=CRS))

    results = pl.run_pipelines(ctx, max_workers=3)
    by_name = {r.name: r for r in results}
    assert list(by_name) == [
        "GST", "GDD", "GSP", "FlavorHours", "SoilPH", "NDVI", "NDWI", "NDMI",
        "Slope", "Elevation", "SolarRadiation", "LandCover",
    ]
    assert int(by_name["FlavorHours"].field.data[0, 0]) == 3
    assert bool(by_name["FlavorHours"].mask.data[0, 0]) is False
    assert float(by_name["SolarRadiation"].field.data[0, 0]) == pytest.approx(3600.0)
    assert bool(by_name["SolarRadiation"].mask.data[0, 0]) is True
    assert bool(by_name["NDVI"].mask.data[0, 0]) is True
    assert bool(by_name["NDWI"].mask.data[0, 0]) is True
    assert bool(by_name["Slope"].mask.data[0, 0]) is True
    assert bool(by_name["Elevation"].mask.data[0, 0]) is True
    comp = pl.composite_result(ctx, results)
    assert comp.mask.shape == (2, 2)
