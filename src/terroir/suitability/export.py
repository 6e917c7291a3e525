#!/usr/bin/env python3
"""export.py

Write RasterFields to GeoTIFF so layers can be opened in QGIS next to the
PNG previews. Masked pixels are written as the nodata value.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import rasterio

from terroir.errors import ConfigurationError
from terroir.raster import RasterField


def write_geotiff(field: RasterField, out_path: Path, *, overwrite: bool = False) -> bool:
    """Write field as a single-band, tiled, deflate-compressed GeoTIFF.

    Returns False (and writes nothing) when out_path exists and overwrite is off.
    """
    if field.transform is None or field.crs is None:
        raise ConfigurationError(f"{field.name}: can't export a field without transform/CRS")
    if out_path.exists() and not overwrite:
        print(f"[SKIP] {out_path.name}")
        return False

    if field.data.dtype == bool:
        # uint8 with 255 as nodata keeps boolean masks compact
        data = field.data.astype("uint8").filled(255)
        dtype, nodata = "uint8", 255
    else:
        data = np.ma.asarray(field.data, dtype="float32").filled(np.nan)
        dtype, nodata = "float32", np.nan

    height, width = field.shape
    profile = {
        "driver": "GTiff",
        "height": height,
        "width": width,
        "count": 1,
        "dtype": dtype,
        "crs": field.crs,
        "transform": field.transform,
        "nodata": nodata,
        "compress": "deflate",
    }
    # GDAL needs tile sizes in multiples of 16 and no larger than the raster
    if height >= 256 and width >= 256:
        profile.update(tiled=True, blockxsize=256, blockysize=256)

    out_path.parent.mkdir(parents=True, exist_ok=True)
    with rasterio.open(out_path, "w", **profile) as dst:
        dst.write(data, 1)
        dst.set_band_description(1, field.name)
        if field.unit:
            dst.update_tags(1, unit=field.unit)
    return True
