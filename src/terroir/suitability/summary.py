#!/usr/bin/env python3
"""summary.py

Per-layer numbers for the run report: distribution stats for continuous
fields and suitable-area fractions for masks. Everything returned is
JSON-serializable.
"""

from __future__ import annotations

from typing import Any, Dict, List

import numpy as np
import pandas as pd

from terroir.raster import RasterField


def field_stats(field: RasterField) -> Dict[str, Any]:
    """mean/min/max/p10/p50/p90/count over valid pixels ({} when none)."""
    v = np.ma.asarray(field.data, dtype="float64").compressed()
    if v.size == 0:
        return {}
    return {
        "mean": float(np.mean(v)),
        "min": float(np.min(v)),
        "max": float(np.max(v)),
        "p10": float(np.percentile(v, 10)),
        "p50": float(np.percentile(v, 50)),
        "p90": float(np.percentile(v, 90)),
        "count": int(v.size),
    }


def mask_fraction(mask: RasterField) -> Dict[str, Any]:
    """Suitable / valid / no-data pixel counts and the suitable share of valid pixels."""
    valid = mask.valid
    suitable = int(np.count_nonzero(np.ma.getdata(mask.data).astype(bool) & valid))
    n_valid = int(np.count_nonzero(valid))
    return {
        "suitable": suitable,
        "valid": n_valid,
        "nodata": int(valid.size - n_valid),
        "fraction": (suitable / n_valid) if n_valid else None,
    }


def summary_table(rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """One row per indicator, sorted by name, for printing or CSV export."""
    df = pd.DataFrame(rows)
    if df.empty:
        return df
    return df.sort_values("indicator").reset_index(drop=True)
