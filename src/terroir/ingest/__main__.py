#!/usr/bin/env python3
"""terroir.ingest

Dataset catalogue CLI for terroir.

This is one of several terroir subsystem CLIs:
- terroir.registry    → analysis boundary (resolve-region)
- terroir.ingest      → dataset catalogue checks (this file)
- terroir.suitability → indicator pipelines, masks, composite, maps

Design goals:
- Config-driven via sources.yaml; every dataset is addressed by its logical id
- Verify mode checks that local inputs exist before a long run
- List mode shows what a collection would feed into the pipelines

Examples:
  # Verify that cached/manual inputs exist
  python -m terroir.ingest verify --source all
  python -m terroir.ingest verify --source terraclimate --json

  # Scene count and date span of a collection, optionally narrowed
  python -m terroir.ingest list --source terraclimate --start 2024-01-01 --end 2025-01-01
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from terroir.config import DEFAULT_SOURCES_YAML, load_yaml
from terroir.errors import TerroirError


# -----------------------------
# Verify helpers (lightweight)
# -----------------------------

def _is_remote(path: str) -> bool:
    return path.startswith(("http://", "https://", "/vsicurl/"))


def _verify_source(source_id: str, sources_yaml: Dict[str, Any]) -> Dict[str, Any]:
    """Best-effort verification.

    Rules:
    - If a source has `local_glob`, ensure it matches at least one file.
    - Else if it has `path`, ensure the file exists (remote paths are skipped).
    - Else if it has `urls`, report how many are configured (not fetched).
    - Else: report "no verify rule".

    Only presence is checked, never content.
    """
    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict) or source_id not in sources:
        return {"source": source_id, "ok": False, "reason": "unknown source"}

    cfg = sources[source_id]
    if not isinstance(cfg, dict):
        return {"source": source_id, "ok": False, "reason": "bad config block"}

    local_glob = cfg.get("local_glob")
    if isinstance(local_glob, str) and local_glob.strip():
        matches = sorted(Path().glob(local_glob))
        return {
            "source": source_id,
            "ok": len(matches) > 0,
            "rule": "local_glob",
            "count": len(matches),
            "sample": [str(p) for p in matches[:5]],
        }

    path = cfg.get("path")
    if isinstance(path, str) and path.strip():
        if _is_remote(path):
            return {"source": source_id, "ok": True, "rule": "path", "note": "remote path (not checked)"}
        p = Path(path)
        if not p.exists():
            return {"source": source_id, "ok": False, "rule": "path", "reason": f"missing file: {p}"}
        return {"source": source_id, "ok": True, "rule": "path", "count": 1, "sample": [str(p)]}

    urls = cfg.get("urls")
    if isinstance(urls, list):
        return {"source": source_id, "ok": len(urls) > 0, "rule": "urls", "count": len(urls),
                "sample": [str(u) for u in urls[:5]]}

    return {"source": source_id, "ok": True, "rule": "none", "note": "no verify rule (skipped)"}


def _list_collection(source_id: str, sources_yaml: Dict[str, Any], start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
    """Scene count and time span of one collection (metadata only, no pixels read)."""
    from terroir.ingest.raster_source import RasterSource

    coll = RasterSource(sources_yaml).fetch_collection(source_id)
    if start or end:
        coll = coll.filter_date(start or "1900-01-01", end or "2200-01-01")
    ts = coll.timestamps
    return {
        "source": source_id,
        "count": len(coll),
        "first": str(ts.min()) if len(ts) else None,
        "last": str(ts.max()) if len(ts) else None,
        "months": sorted({int(m) for m in ts.month}) if len(ts) else [],
    }


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="terroir.ingest", description="Dataset catalogue checks for terroir")

    # Default paths are centralized in terroir.config for consistency across CLIs
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML, help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- verify ---
    ver = sub.add_parser("verify", help="Verify that required/local cached inputs exist")
    ver.add_argument("--source", default="all", help="Source id to verify (or 'all')")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    # --- list ---
    ls = sub.add_parser("list", help="Show scene count and date span of a collection")
    ls.add_argument("--source", required=True, help="Collection source id (e.g. terraclimate)")
    ls.add_argument("--start", default=None, help="Keep scenes on/after this date (YYYY-MM-DD)")
    ls.add_argument("--end", default=None, help="Keep scenes before this date (YYYY-MM-DD)")
    ls.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


def _handle_verify(args: argparse.Namespace, sources_yaml: Dict[str, Any]) -> int:
    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict):
        raise SystemExit("sources.yaml must contain top-level 'sources:' mapping")

    if args.source == "all":
        results = [_verify_source(sid, sources_yaml) for sid in sorted(sources.keys())]
    else:
        results = [_verify_source(args.source, sources_yaml)]

    ok = all(r.get("ok") for r in results)
    if args.json:
        print(json.dumps({"ok": ok, "results": results}, indent=2))
    else:
        for r in results:
            status = "OK" if r.get("ok") else "MISSING"
            print(f"[{status}] {r['source']} ({r.get('rule', '?')})")
            if "reason" in r:
                print(f"  - reason: {r['reason']}")
            if "note" in r:
                print(f"  - note: {r['note']}")
            if "count" in r:
                print(f"  - count: {r['count']}")
            for s in r.get("sample") or []:
                print(f"    - {s}")
        print(f"Overall: {'OK' if ok else 'NOT OK'}")
    return 0 if ok else 2


def _handle_list(args: argparse.Namespace, sources_yaml: Dict[str, Any]) -> int:
    info = _list_collection(args.source, sources_yaml, args.start, args.end)
    if args.json:
        print(json.dumps(info, indent=2))
    else:
        print(f"[{info['source']}] {info['count']} scene(s)")
        if info["count"]:
            print(f"  - span: {info['first']} .. {info['last']}")
            print(f"  - months: {info['months']}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "verify": _handle_verify,
        "list": _handle_list,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    try:
        # Load YAML only once, inside main (so import doesn't have side effects)
        sources_yaml = load_yaml(args.sources_yaml)
        return handler(args, sources_yaml)
    except TerroirError as e:
        raise SystemExit(str(e)) from e


if __name__ == "__main__":
    raise SystemExit(main())
