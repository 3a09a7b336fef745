"""
CSV exporter — Writes task rows as a flat CSV table.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any


def flatten_value(value: Any) -> Any:
    """Render nested values as one cell: lists joined with '; ', dicts as k=v."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return "; ".join(str(flatten_value(v)) for v in value)
    if isinstance(value, dict):
        return "; ".join(f"{k}={flatten_value(v)}" for k, v in value.items())
    return value


def flatten_row(row: dict, columns: list[str]) -> dict:
    return {c: flatten_value(row.get(c)) for c in columns}


def export_csv(
    rows: list[dict],
    columns: list[str],
    output_dir: Path,
    name: str,
    run_id: str,
) -> Path:
    """
    Write rows to <name>_<run_id>.csv (UTF-8 with BOM so Excel opens it cleanly).

    Returns:
        Path to the created CSV file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"{name}_{run_id}.csv"

    with open(path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(flatten_row(row, columns))

    return path
