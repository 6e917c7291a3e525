#!/usr/bin/env python3

from __future__ import annotations

import json
import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
import rasterio
import yaml
from rasterio.transform import from_origin
from shapely.geometry import box

# Ensure we can import from src without installing the package
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from terroir.ingest import __main__ as ingest_cli
from terroir.registry import __main__ as registry_cli
from terroir.suitability import __main__ as suitability_cli

GRID = from_origin(-2.0, 52.0, 0.5, 0.5)


@pytest.fixture
def project(tmp_path, monkeypatch):
    """A tiny on-disk project: boundaries, 2024 TerraClimate months, configs."""
    monkeypatch.chdir(tmp_path)
    Path("data/tc").mkdir(parents=True)
    tmean = np.array([[15.0, 20.0], [15.0, 5.0]], dtype="float32")
    for m in range(1, 13):
        with rasterio.open(
            f"data/tc/TerraClimate_2024-{m:02d}.tif", "w", driver="GTiff", height=2, width=2, count=3,
            dtype="float32", crs="EPSG:4326", transform=GRID,
        ) as dst:
            dst.write(tmean * 10, 1)
            dst.write(tmean * 10, 2)
            dst.write(np.full((2, 2), 50.0, dtype="float32"), 3)
    gpd.GeoDataFrame(
        {"country_na": ["Testland", "Elsewhere"]},
        geometry=[box(-2, 51, -1, 52), box(5, 5, 6, 6)],
        crs="EPSG:4326",
    ).to_file("data/lsib.gpkg", driver="GPKG")

    sources = {
        "sources": {
            "boundaries": {"kind": "vector", "path": "data/lsib.gpkg"},
            "terraclimate": {
                "kind": "collection",
                "local_glob": "data/tc/TerraClimate_*.tif",
                "bands": ["tmmx", "tmmn", "pr"],
            },
            "srtm": {"kind": "image", "path": "data/missing_srtm.tif"},
        }
    }
    analysis = {"region": {"name": "Testland"}, "year": 2024}
    Path("sources.yaml").write_text(yaml.safe_dump(sources), encoding="utf-8")
    Path("suitability.yaml").write_text(yaml.safe_dump(analysis), encoding="utf-8")
    return tmp_path


def test_ingest_verify(project, capsys):
    rc = ingest_cli.main(["--sources-yaml", "sources.yaml", "verify", "--json"])
    out = json.loads(capsys.readouterr().out)
    by_id = {r["source"]: r for r in out["results"]}
    assert rc == 2
    assert by_id["terraclimate"]["count"] == 12
    assert by_id["boundaries"]["ok"] is True
    assert by_id["srtm"]["ok"] is False


def test_ingest_list(project, capsys):
    rc = ingest_cli.main(["--sources-yaml", "sources.yaml", "list", "--source", "terraclimate",
                          "--start", "2024-04-01", "--end", "2024-11-01", "--json"])
    info = json.loads(capsys.readouterr().out)
    assert rc == 0
    assert info["count"] == 7
    assert info["months"] == [4, 5, 6, 7, 8, 9, 10]


def test_ingest_unknown_source_exits(project):
    with pytest.raises(SystemExit, match="chirps"):
        ingest_cli.main(["--sources-yaml", "sources.yaml", "list", "--source", "chirps"])


def test_registry_resolve_region(project, capsys):
    rc = registry_cli.main(["--sources-yaml", "sources.yaml", "--config", "suitability.yaml",
                            "resolve-region", "--out-gpkg", "out/region.gpkg"])
    out = capsys.readouterr().out
    assert rc == 0
    assert "[REGION] Testland" in out
    assert Path("out/region.gpkg").exists()


def test_registry_unknown_region_exits(project):
    with pytest.raises(SystemExit, match="Narnia"):
        registry_cli.main(["--sources-yaml", "sources.yaml", "--config", "suitability.yaml",
                           "resolve-region", "--name", "Narnia"])


def test_suitability_describe(project, capsys):
    rc = suitability_cli.main(["--config", "suitability.yaml", "describe"])
    out = json.loads(capsys.readouterr().out)
    assert rc == 0
    assert out["config"]["region"]["name"] == "Testland"
    assert out["config"]["thresholds"]["gst"] == {"min": 14.1, "max": 15.5, "inclusive": True}
    assert "landcover" in out["pipelines"]


def test_suitability_dry_run_reads_nothing(project, capsys):
    rc = suitability_cli.main(["--sources-yaml", "sources.yaml", "--config", "suitability.yaml", "--dry-run", "run"])
    assert rc == 0
    assert "[dry-run]" in capsys.readouterr().out


def test_suitability_run_climate(project, capsys):
    rc = suitability_cli.main([
        "--sources-yaml", "sources.yaml", "--config", "suitability.yaml", "--out-dir", "out",
        "run", "--indicators", "gst", "gsp", "--geotiff", "--json",
    ])
    assert rc == 0
    out = capsys.readouterr().out
    summary = json.loads(out[out.index("{"):])
    layers = {row["indicator"]: row for row in summary["layers"]}
    assert layers["GST"]["suitable"] == 2
    assert layers["GST"]["fraction"] == pytest.approx(0.5)
    assert layers["GSP"]["mean"] == pytest.approx(350.0)
    assert layers["Composite"]["suitable"] == 2
    for name in ("GST.png", "GST_suitable.png", "GSP.png", "Composite.png", "GST.tif", "Composite.tif", "summary.csv"):
        assert (Path("out") / name).exists(), name


def test_suitability_missing_dataset_exits(project):
    with pytest.raises(SystemExit):
        suitability_cli.main([
            "--sources-yaml", "sources.yaml", "--config", "suitability.yaml", "--out-dir", "out",
            "run", "--indicators", "terrain", "--no-render",
        ])
