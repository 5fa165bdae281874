import argparse
import csv
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

FIELDS = ["domain", "price", "grace_end", "expiration_date"]


def load_results(path: Path) -> List[Dict[str, Any]]:
    raw = path.read_text(encoding="utf-8", errors="ignore").strip()
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"[WARN] JSON parse failed: {path.name} ({e})")
        return []
    if not isinstance(data, list):
        print(f"[WARN] Expected a JSON list in {path.name}")
        return []
    return [row for row in data if isinstance(row, dict)]


def filter_rows(
    rows: Iterable[Dict[str, Any]],
    include_pending: bool = False,
    max_price: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Keep successful rows that are snipeable (or every successful row with
    include_pending), at or under max_price when given.
    De-dup by domain (first occurrence wins). Sorted cheapest first.
    """
    out: List[Dict[str, Any]] = []
    seen = set()

    for row in rows:
        domain = row.get("domain")
        if not domain or domain in seen or row.get("error"):
            continue
        price = row.get("price")
        if not isinstance(price, (int, float)):
            continue
        if not include_pending and row.get("snipeable") is not True:
            continue
        if max_price is not None and price > max_price:
            continue
        seen.add(domain)
        out.append(row)

    out.sort(key=lambda r: r["price"])
    return out


def write_csv_chunks(rows: List[Dict[str, Any]], out_dir: Path, chunk_size: int = 1000) -> List[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    written: List[Path] = []

    total = len(rows)
    if total == 0:
        return written

    file_index = 1
    for i in range(0, total, chunk_size):
        chunk = rows[i : i + chunk_size]
        out_path = out_dir / f"snipeable_{ts}_{file_index:06d}.csv"

        with out_path.open("w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(FIELDS)
            for row in chunk:
                w.writerow([row["domain"], f"{row['price']:.4f}", row.get("grace_end", ""),
                            row.get("expiration_date", "")])

        written.append(out_path)
        file_index += 1

    return written


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="Read ens_snipe results JSON, keep snipeable names, export CSV sorted by price (1000 per file)."
    )
    ap.add_argument("--input", default="out/ens_results.json", help="Results JSON (default: out/ens_results.json)")
    ap.add_argument("--output", default="out_snipe", help="Output folder for CSV files (default: out_snipe)")
    ap.add_argument("--chunk", type=int, default=1000, help="Domains per CSV file (default: 1000)")
    ap.add_argument("--max-price", type=float, default=None, help="Only keep names priced at or below this")
    ap.add_argument("--include-pending", action="store_true",
                    help="Also export names still inside their grace period")
    args = ap.parse_args(argv)

    in_path = Path(args.input)
    if not in_path.is_file():
        raise SystemExit(f"[ERR] Results file not found: {in_path.resolve()}")
    if args.chunk < 1:
        raise SystemExit("[ERR] --chunk must be >= 1")

    rows = load_results(in_path)
    kept = filter_rows(rows, include_pending=args.include_pending, max_price=args.max_price)
    written = write_csv_chunks(kept, Path(args.output), chunk_size=args.chunk)

    print(f"[OK] Results read: {len(rows)}")
    print(f"[OK] Matched: {len(kept)}")
    print(f"[OK] CSV written: {len(written)} -> {Path(args.output).resolve()}")
    if written:
        print(f"[OK] Example output: {written[0].name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
