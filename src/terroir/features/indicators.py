#!/usr/bin/env python3
"""indicators.py

*how raw bands become agro-climatic signals*

Each compute_* function takes a collection (already filtered to the region
and analysis period) or a static field, and returns one derived RasterField.
They never threshold; that is the evaluator's job.

Band conventions follow the source datasets:
- TerraClimate: tmmx / tmmn in 0.1 degC, pr in mm
- ERA5-Land hourly: temperature_2m in K
- ERA5-Land monthly: surface_net_solar_radiation_sum in J/m2
- OpenLandMap soil pH: b0 in pH x 10
- Landsat 8 C2 L2: SR_B* digital numbers (scale 2.75e-5, offset -0.2)
"""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

import numpy as np

from terroir.errors import ConfigurationError
from terroir.ingest.collection import Bands, ImageCollection
from terroir.raster import RasterField, is_geographic

KELVIN_OFFSET = 273.15
LANDSAT_SR_SCALE = 2.75e-5
LANDSAT_SR_OFFSET = -0.2
J_PER_MJ = 1e6

# Earth radius used to turn degree spacing into metres on geographic grids.
EARTH_RADIUS_M = 6_371_008.8

# (name, first band, second band) -> (a - b) / (a + b)
SPECTRAL_INDICES: Tuple[Tuple[str, str, str], ...] = (
    ("NDVI", "SR_B5", "SR_B4"),
    ("NDWI", "SR_B3", "SR_B5"),
    ("NDMI", "SR_B5", "SR_B6"),
)


# -----------------------------------------------------------------------------
# Per-pixel helpers
# -----------------------------------------------------------------------------

def monthly_tmean(tmmx: np.ma.MaskedArray, tmmn: np.ma.MaskedArray) -> np.ma.MaskedArray:
    """Monthly mean temperature in degC from TerraClimate 0.1 degC bands."""
    return (tmmx / 10.0 + tmmn / 10.0) / 2.0


def degree_days(tmean: np.ma.MaskedArray, base_temp: float, days_per_month: float) -> np.ma.MaskedArray:
    """max(0, tmean - base) * days; cold months contribute 0, never a debt."""
    return np.ma.clip(tmean - base_temp, 0.0, None) * days_per_month


def in_band(values: np.ma.MaskedArray, t_min: float, t_max: float) -> np.ma.MaskedArray:
    """Boolean t_min <= v <= t_max with the input mask carried through."""
    values = np.ma.asarray(values)
    return np.ma.MaskedArray((values.data >= t_min) & (values.data <= t_max), mask=np.ma.getmaskarray(values))


def normalized_difference(a: np.ma.MaskedArray, b: np.ma.MaskedArray) -> np.ma.MaskedArray:
    """(a - b) / (a + b); a zero denominator is masked."""
    return np.ma.divide(a - b, a + b)


def _add_tmean(bands: Bands) -> Bands:
    return {**bands, "tmean": monthly_tmean(bands["tmmx"], bands["tmmn"])}


# -----------------------------------------------------------------------------
# Climate indicators (TerraClimate / ERA5-Land)
# -----------------------------------------------------------------------------

def compute_gst(collection: ImageCollection, months: Tuple[int, int] = (4, 10)) -> RasterField:
    """Growing-season mean temperature (degC): mean monthly tmean over months."""
    gs = collection.filter_calendar_month(*months).select(["tmmx", "tmmn"]).map(_add_tmean)
    return gs.reduce("tmean", "mean", name="GST", unit="degC")


def compute_gdd(
    collection: ImageCollection,
    base_temp: float = 10.0,
    days_per_month: float = 30.0,
    months: Tuple[int, int] = (4, 10),
) -> RasterField:
    """Growing degree days (degC*days), summed monthly over the growing season."""

    def _gdd(bands: Bands) -> Bands:
        tmean = monthly_tmean(bands["tmmx"], bands["tmmn"])
        return {"GDD": degree_days(tmean, base_temp, days_per_month)}

    gs = collection.filter_calendar_month(*months).select(["tmmx", "tmmn"]).map(_gdd)
    return gs.reduce("GDD", "sum", name="GDD", unit="degC*days")


def compute_gsp(collection: ImageCollection, months: Tuple[int, int] = (4, 10)) -> RasterField:
    """Growing-season precipitation total (mm)."""
    gs = collection.filter_calendar_month(*months).select(["pr"])
    return gs.reduce("pr", "sum", name="GSP", unit="mm")


def compute_flavor_hours(
    collection: ImageCollection,
    start: str,
    end: str,
    t_min: float = 16.0,
    t_max: float = 22.0,
    band: str = "temperature_2m",
) -> RasterField:
    """Hours in [start, end) with t_min <= T(degC) <= t_max.

    Hours with no data don't count; a pixel with no data in any hour stays no-data.
    """

    def _flag(bands: Bands) -> Bands:
        temp_c = bands[band] - KELVIN_OFFSET
        return {"flag": in_band(temp_c, t_min, t_max)}

    window = collection.filter_date(start, end).select([band]).map(_flag)
    return window.reduce("flag", "sum", name="FlavorHours", unit="hours")


def compute_solar_radiation(
    collection: ImageCollection,
    band: str = "surface_net_solar_radiation_sum",
) -> RasterField:
    """Annual net solar radiation (MJ/m2) from monthly J/m2 sums."""
    total = collection.select([band]).reduce(band, "sum")
    return total.derive("SolarRadiation", total.data / J_PER_MJ, unit="MJ/m2")


# -----------------------------------------------------------------------------
# Static layers
# -----------------------------------------------------------------------------

def compute_soil_ph(raw: RasterField) -> RasterField:
    """Soil pH from the OpenLandMap b0 band (stored as pH x 10). No clamping."""
    return raw.derive("SoilPH", raw.data / 10.0, unit="pH")


def compute_elevation(dem: RasterField) -> RasterField:
    return dem.derive("Elevation", np.ma.asarray(dem.data, dtype="float64"), unit="m")


def _pixel_size_m(dem: RasterField) -> Tuple[np.ndarray, float]:
    """Per-row x spacing and constant y spacing in metres."""
    t = dem.transform
    xres, yres = abs(t.a), abs(t.e)
    if not is_geographic(dem.crs):
        return np.full(dem.shape[0], xres), yres
    rows = np.arange(dem.shape[0]) + 0.5
    lat = np.radians(t.f + rows * t.e)
    m_per_deg = np.pi * EARTH_RADIUS_M / 180.0
    return xres * m_per_deg * np.cos(lat), yres * m_per_deg


def compute_slope(dem: RasterField) -> RasterField:
    """Terrain slope in degrees via central-difference gradients.

    Geographic grids use metre spacing derived from each row's latitude.
    Masked DEM pixels (and their gradient neighbours) come out masked.
    """
    if dem.transform is None:
        raise ConfigurationError(f"{dem.name}: slope needs the DEM transform")
    z = np.ma.asarray(dem.data, dtype="float64").filled(np.nan)
    dx, dy = _pixel_size_m(dem)
    gy, gx = np.gradient(z, dy, 1.0)
    gx = gx / dx[:, None]
    slope = np.degrees(np.arctan(np.hypot(gx, gy)))
    return dem.derive("Slope", np.ma.masked_invalid(slope), unit="deg")


# -----------------------------------------------------------------------------
# Landsat spectral indices
# -----------------------------------------------------------------------------

def rescale_reflectance(dn: np.ma.MaskedArray) -> np.ma.MaskedArray:
    return np.ma.asarray(dn, dtype="float64") * LANDSAT_SR_SCALE + LANDSAT_SR_OFFSET


def compute_spectral_indices(
    collection: ImageCollection,
    max_cloud_cover: float = 60.0,
    indices: Iterable[Tuple[str, str, str]] = SPECTRAL_INDICES,
) -> Dict[str, RasterField]:
    """NDVI / NDWI / NDMI as per-pixel medians over the low-cloud scenes.

    The median keeps a few cloudy or hazy scenes from dragging the composite.
    """
    indices = tuple(indices)
    wanted = sorted({b for _, a, b2 in indices for b in (a, b2)})

    def _indices(bands: Bands) -> Bands:
        sr = {b: rescale_reflectance(bands[b]) for b in wanted}
        return {name: normalized_difference(sr[a], sr[b]) for name, a, b in indices}

    clear = collection.filter_property("CLOUD_COVER", "lt", max_cloud_cover).select(wanted).map(_indices)
    # one read per scene for all indices
    return clear.reduce_bands([name for name, _, _ in indices], "median")
