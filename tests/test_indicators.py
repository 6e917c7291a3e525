#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from rasterio.transform import from_origin

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from terroir.config import Bounds
from terroir.errors import ConfigurationError, EmptyResultError
from terroir.features import indicators as ind
from terroir.ingest.collection import ImageCollection, Scene
from terroir.raster import RasterField
from terroir.suitability.evaluate import evaluate_bounds


def _terraclimate(tmeans_by_month, pr=50.0, shape=(1, 1)):
    """Monthly TerraClimate-like scenes with tmmx == tmmn == tmean (0.1 degC units)."""
    scenes = []
    for month, tmean in tmeans_by_month.items():
        t = np.full(shape, tmean * 10.0)
        scenes.append(Scene.from_arrays(
            f"2024-{month:02d}-01", {"tmmx": t, "tmmn": t, "pr": np.full(shape, pr)}
        ))
    return ImageCollection.from_scenes("terraclimate", scenes)


# -----------------------------------------------------------------------------
# Climate
# -----------------------------------------------------------------------------

def test_monthly_tmean_from_tenths():
    assert float(ind.monthly_tmean(np.ma.asarray(140.0), np.ma.asarray(100.0))) == pytest.approx(12.0)


def test_gdd_scenario_warm_and_cold_month():
    # tmean 12 contributes (12 - 10) * 30, tmean 8 contributes nothing
    coll = _terraclimate({4: 12.0, 5: 8.0})
    gdd = ind.compute_gdd(coll, base_temp=10.0, days_per_month=30.0)
    assert gdd.name == "GDD"
    assert gdd.data[0, 0] == pytest.approx(60.0)


def test_gdd_ignores_months_outside_growing_season():
    coll = _terraclimate({1: 25.0, 4: 12.0, 11: 25.0})
    assert ind.compute_gdd(coll).data[0, 0] == pytest.approx(60.0)


def test_gdd_is_monotone_in_base_temp():
    rng = np.random.default_rng(7)
    tmeans = {m: rng.uniform(5, 25, size=(4, 4)) for m in range(4, 11)}
    scenes = [
        Scene.from_arrays(f"2024-{m:02d}-01", {"tmmx": t * 10, "tmmn": t * 10}) for m, t in tmeans.items()
    ]
    coll = ImageCollection.from_scenes("terraclimate", scenes)
    low, mid, high = (ind.compute_gdd(coll, base_temp=b).data for b in (5.0, 10.0, 15.0))
    assert np.all(low >= mid)
    assert np.all(mid >= high)
    assert np.all(high >= 0)


def test_gst_scenario_mean_and_mask():
    coll = _terraclimate({1: 30.0, 4: 14.0, 5: 15.0, 6: 16.0})
    gst = ind.compute_gst(coll)
    assert gst.name == "GST"
    assert gst.unit == "degC"
    assert gst.data[0, 0] == pytest.approx(15.0)
    assert bool(evaluate_bounds(gst, Bounds(14.1, 15.5)).data[0, 0]) is True


def test_gst_without_growing_season_scenes_is_an_error():
    coll = _terraclimate({1: 5.0, 2: 6.0})
    with pytest.raises(EmptyResultError):
        ind.compute_gst(coll)


def test_gsp_sums_growing_season_precipitation():
    coll = _terraclimate({m: 10.0 for m in range(1, 13)}, pr=50.0)
    gsp = ind.compute_gsp(coll)
    assert gsp.unit == "mm"
    assert gsp.data[0, 0] == pytest.approx(7 * 50.0)


def _hourly(temps_c, start="2024-07-20", shape=(1, 1)):
    t0 = pd.Timestamp(start)
    scenes = [
        Scene.from_arrays(t0 + pd.Timedelta(hours=i), {"temperature_2m": np.full(shape, c + ind.KELVIN_OFFSET)})
        for i, c in enumerate(temps_c)
    ]
    return ImageCollection.from_scenes("era5_land_hourly", scenes)


def test_flavor_hours_scenario_band_is_inclusive():
    fh = ind.compute_flavor_hours(_hourly([15, 16, 20, 22, 23]), "2024-07-20", "2024-09-20", 16, 22)
    assert fh.name == "FlavorHours"
    assert int(fh.data[0, 0]) == 3


def test_flavor_hours_respects_window():
    before = _hourly([18], start="2024-07-19T23:00")
    inside = _hourly([18, 18], start="2024-07-20")
    at_end = _hourly([18], start="2024-09-20")
    coll = ImageCollection.from_scenes("era5_land_hourly", before.scenes + inside.scenes + at_end.scenes)
    fh = ind.compute_flavor_hours(coll, "2024-07-20", "2024-09-20")
    assert int(fh.data[0, 0]) == 2


def test_flavor_hours_bounded_by_hours_in_window():
    rng = np.random.default_rng(3)
    temps = rng.uniform(10, 28, size=48)
    t0 = pd.Timestamp("2024-07-20")
    scenes = [
        Scene.from_arrays(t0 + pd.Timedelta(hours=i), {"temperature_2m": np.full((2, 2), c + ind.KELVIN_OFFSET)})
        for i, c in enumerate(temps)
    ]
    fh = ind.compute_flavor_hours(ImageCollection.from_scenes("h", scenes), "2024-07-20", "2024-09-20")
    assert np.all(fh.data >= 0)
    assert np.all(fh.data <= 48)


def test_flavor_hours_nodata():
    masked = np.ma.MaskedArray([[290.0, 290.0]], mask=[[False, True]])
    scenes = [Scene.from_arrays("2024-07-20 00:00", {"temperature_2m": masked})]
    fh = ind.compute_flavor_hours(ImageCollection.from_scenes("h", scenes), "2024-07-20", "2024-09-20")
    assert np.ma.getmaskarray(fh.data).tolist() == [[False, True]]


def test_solar_radiation_in_megajoules():
    scenes = [
        Scene.from_arrays(f"2024-{m:02d}-01", {"surface_net_solar_radiation_sum": np.full((1, 1), 1.5e9)})
        for m in (1, 2)
    ]
    rad = ind.compute_solar_radiation(ImageCollection.from_scenes("era5_land_monthly", scenes))
    assert rad.name == "SolarRadiation"
    assert rad.unit == "MJ/m2"
    assert rad.data[0, 0] == pytest.approx(3000.0)


# -----------------------------------------------------------------------------
# Static layers
# -----------------------------------------------------------------------------

def test_soil_ph_is_raw_over_ten_exactly():
    raw_values = np.array([[68, 72, 0, 95]])
    ph = ind.compute_soil_ph(RasterField(name="b0", data=raw_values))
    assert ph.name == "SoilPH"
    assert np.array_equal(np.ma.getdata(ph.data), raw_values / 10.0)


def test_slope_of_45_degree_plane_on_projected_grid():
    # 30 m pixels, z rises 30 m per column
    z = np.tile(np.arange(5, dtype="float64") * 30.0, (5, 1))
    dem = RasterField(name="elevation", data=z, transform=from_origin(400000, 100150, 30, 30), crs="EPSG:27700")
    slope = ind.compute_slope(dem)
    assert slope.unit == "deg"
    np.testing.assert_allclose(np.ma.getdata(slope.data), 45.0)


def test_slope_of_flat_dem_on_geographic_grid():
    dem = RasterField(name="elevation", data=np.full((4, 4), 100.0),
                      transform=from_origin(-1.0, 52.0, 0.001, 0.001), crs="EPSG:4326")
    np.testing.assert_allclose(np.ma.getdata(ind.compute_slope(dem).data), 0.0)


def test_slope_masks_nodata_neighbourhood():
    z = np.ma.MaskedArray(np.zeros((3, 3)), mask=np.zeros((3, 3), dtype=bool))
    z.mask[1, 1] = True
    dem = RasterField(name="elevation", data=z, transform=from_origin(0, 90, 30, 30), crs="EPSG:27700")
    slope = ind.compute_slope(dem)
    assert bool(np.ma.getmaskarray(slope.data)[1, 1])
    assert not bool(np.ma.getmaskarray(slope.data)[0, 0])


def test_slope_needs_transform():
    with pytest.raises(ConfigurationError):
        ind.compute_slope(RasterField(name="elevation", data=np.zeros((2, 2))))


def test_elevation_passthrough():
    dem = RasterField(name="elevation", data=np.array([[49, 50, 220, 221]]))
    elev = ind.compute_elevation(dem)
    assert elev.name == "Elevation"
    assert evaluate_bounds(elev, Bounds(50, 220)).data.tolist() == [[False, True, True, False]]


# -----------------------------------------------------------------------------
# Landsat
# -----------------------------------------------------------------------------

def _dn(reflectance):
    return (np.asarray(reflectance, dtype="float64") - ind.LANDSAT_SR_OFFSET) / ind.LANDSAT_SR_SCALE


def _landsat_scene(date, red, nir, cloud):
    bands = {
        "SR_B3": np.full((1, 1), _dn(0.05)),
        "SR_B4": np.full((1, 1), _dn(red)),
        "SR_B5": np.full((1, 1), _dn(nir)),
        "SR_B6": np.full((1, 1), _dn(0.15)),
    }
    return Scene.from_arrays(date, bands, CLOUD_COVER=cloud)


def _ndvi(red, nir):
    return (nir - red) / (nir + red)


def test_spectral_indices_are_medians_of_clear_scenes():
    scenes = [
        _landsat_scene("2024-05-01", red=0.10, nir=0.30, cloud=5),
        _landsat_scene("2024-06-01", red=0.10, nir=0.40, cloud=20),
        _landsat_scene("2024-07-01", red=0.10, nir=0.50, cloud=40),
        _landsat_scene("2024-08-01", red=0.30, nir=0.10, cloud=95),
    ]
    out = ind.compute_spectral_indices(ImageCollection.from_scenes("landsat8_sr", scenes), max_cloud_cover=60)
    assert set(out) == {"NDVI", "NDWI", "NDMI"}
    assert float(out["NDVI"].data[0, 0]) == pytest.approx(_ndvi(0.10, 0.40))
    assert float(out["NDWI"].data[0, 0]) == pytest.approx((0.05 - 0.40) / (0.05 + 0.40))
    assert float(out["NDMI"].data[0, 0]) == pytest.approx((0.40 - 0.15) / (0.40 + 0.15))


def test_normalized_difference_masks_zero_denominator():
    nd = ind.normalized_difference(np.ma.asarray([[0.0, 0.3]]), np.ma.asarray([[0.0, 0.1]]))
    assert np.ma.getmaskarray(nd).tolist() == [[True, False]]
    assert float(nd[0, 1]) == pytest.approx(0.5)
