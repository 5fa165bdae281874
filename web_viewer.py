#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Mini web viewer for ENS snipe results (Flask) + trigger scan button

- HTML in templates/index.html
- Reads the ens_snipe.py results JSON (reloaded when the file changes)
- UI: search + pagination + copy + Scan button
- /scan triggers a background ens_snipe.py run (subprocess)
- /api/scan_status returns running status

Behavior:
- If the results file does not exist yet: serve empty list + note (no crash)
- Scan output is LOCKED to the viewer's results file (--output is not overridable)

Install:
  pip install flask

Run:
  python web_viewer.py --results ./out/ens_results.json --scan-args "--csv names.csv"
Open:
  http://127.0.0.1:8080
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, render_template, request

app = Flask(__name__)

# ----------------------------
# Data cache (reload on change)
# ----------------------------


@dataclass
class Cache:
    results_path: Path
    mtime: float = 0.0
    rows: List[Dict[str, Any]] = field(default_factory=list)
    load_error: Optional[str] = None

    def _load(self) -> List[Dict[str, Any]]:
        raw = self.results_path.read_text(encoding="utf-8").strip()
        if not raw:
            return []
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError("results file must contain a JSON list")
        return [r for r in data if isinstance(r, dict) and r.get("domain") and not r.get("error")]

    def refresh_if_needed(self) -> None:
        if not self.results_path.exists():
            self.rows = []
            self.mtime = 0.0
            return

        new_mtime = self.results_path.stat().st_mtime
        if new_mtime <= self.mtime:
            return

        try:
            rows = self._load()
        except ValueError as e:
            # keep serving the last good snapshot; a scan may be mid-write
            self.load_error = f"{type(e).__name__}: {e}"
            return

        rows.sort(key=lambda r: (not r.get("snipeable"), r.get("price") or 0.0))
        self.rows = rows
        self.mtime = new_mtime
        self.load_error = None


CACHE: Optional[Cache] = None

# ----------------------------
# Scan trigger (background)
# ----------------------------

SCAN_STATE: Dict[str, Any] = {
    "running": False,
    "started_at": None,
    "ended_at": None,
    "last_exit_code": None,
    "last_error": None,
}

SCAN_CMD: List[str] = []  # populated in main
SCAN_LOCK = threading.Lock()


def _run_scan_bg() -> None:
    # "running" is set by trigger_scan under SCAN_LOCK
    try:
        p = subprocess.run(
            SCAN_CMD,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.STDOUT,
            check=False,
        )
        SCAN_STATE["last_exit_code"] = int(p.returncode)
    except OSError as e:
        SCAN_STATE["last_error"] = f"{type(e).__name__}: {e}"
    finally:
        SCAN_STATE["running"] = False
        SCAN_STATE["ended_at"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


def build_scan_cmd(scan_script: str, results_path: Path, scan_args: str) -> List[str]:
    cmd = [sys.executable, scan_script, "--output", str(results_path)]

    # extra args allowed, but the output file stays locked
    extra = scan_args.strip().split()
    i = 0
    while i < len(extra):
        tok = extra[i]
        if tok == "--output":
            i += 2
            continue
        if tok.startswith("--output="):
            i += 1
            continue
        cmd.append(tok)
        i += 1
    return cmd


# ----------------------------
# Routes
# ----------------------------


@app.get("/")
def index():
    return render_template("index.html")


@app.get("/api/domains")
def api_domains():
    assert CACHE is not None
    CACHE.refresh_if_needed()

    q = (request.args.get("q") or "").strip().lower()
    show_all = (request.args.get("all") or "").strip().lower() in ("1", "true", "yes")
    page = int(request.args.get("page") or "1")
    per_page = int(request.args.get("per_page") or "200")
    if page < 1:
        page = 1
    if per_page < 1:
        per_page = 1
    if per_page > 5000:
        per_page = 5000

    items = CACHE.rows
    if not show_all:
        items = [r for r in items if r.get("snipeable")]
    if q:
        items = [r for r in items if q in str(r["domain"]).lower()]

    total = len(items)
    start = (page - 1) * per_page
    page_items = items[start : start + per_page]

    updated_at = (
        time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(CACHE.mtime))
        if CACHE.mtime
        else None
    )

    note = None
    if not CACHE.results_path.exists():
        note = "No results file yet. Click Scan to generate data."
    elif CACHE.load_error:
        note = f"Results file could not be read: {CACHE.load_error}"

    return jsonify(
        {
            "total": total,
            "page": page,
            "per_page": per_page,
            "items": page_items,
            "source_file": str(CACHE.results_path),
            "updated_at": updated_at,
            "note": note,
        }
    )


@app.get("/api/scan_status")
def api_scan_status():
    return jsonify(
        {
            "running": bool(SCAN_STATE["running"]),
            "started_at": SCAN_STATE["started_at"],
            "ended_at": SCAN_STATE["ended_at"],
            "last_exit_code": SCAN_STATE["last_exit_code"],
            "last_error": SCAN_STATE["last_error"],
            "cmd": SCAN_CMD,
        }
    )


@app.post("/scan")
def trigger_scan():
    with SCAN_LOCK:
        if SCAN_STATE["running"]:
            return jsonify({"ok": False, "error": "scan already running"}), 409
        SCAN_STATE["running"] = True
        SCAN_STATE["started_at"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        SCAN_STATE["ended_at"] = None
        SCAN_STATE["last_error"] = None
        SCAN_STATE["last_exit_code"] = None

        t = threading.Thread(target=_run_scan_bg, daemon=True)
        try:
            t.start()
        except RuntimeError:
            SCAN_STATE["running"] = False
            raise
    return jsonify({"ok": True, "status": "scan started", "cmd": SCAN_CMD})


# ----------------------------
# Main
# ----------------------------


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        "web_viewer.py",
        description="Mini web UI for viewing snipeable ENS names + trigger scan.",
    )
    p.add_argument("--results", default="./out/ens_results.json", help="ens_snipe.py results JSON")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)
    p.add_argument("--scan-script", default="ens_snipe.py", help="Scanner script to run on button click")
    p.add_argument("--scan-args", default="", help="Extra args appended to scan command (string)")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    results_path = Path(args.results)
    results_path.parent.mkdir(parents=True, exist_ok=True)

    global CACHE
    CACHE = Cache(results_path=results_path)
    CACHE.refresh_if_needed()

    global SCAN_CMD
    SCAN_CMD = build_scan_cmd(args.scan_script, results_path, args.scan_args)

    print(f"Serving on http://{args.host}:{args.port}")
    print(f"Reading from: {results_path}")
    print(f"Scan command: {' '.join(SCAN_CMD)}")

    app.run(host=args.host, port=args.port, debug=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
