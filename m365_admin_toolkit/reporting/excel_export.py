"""
Excel exporter — Writes task rows as a formatted worksheet.
"""

from __future__ import annotations

from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from .csv_export import flatten_row

MAX_COLUMN_WIDTH = 60
SHEET_TITLE_LIMIT = 31  # Excel limit


def export_xlsx(
    rows: list[dict],
    columns: list[str],
    output_dir: Path,
    name: str,
    run_id: str,
) -> Path:
    """
    Write rows to <name>_<run_id>.xlsx with a bold, frozen, filterable header.

    Returns:
        Path to the created workbook.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"{name}_{run_id}.xlsx"

    wb = Workbook()
    ws = wb.active
    ws.title = name[:SHEET_TITLE_LIMIT]

    ws.append(columns)
    for cell in ws[1]:
        cell.font = Font(bold=True)

    widths = [len(c) for c in columns]
    for row in rows:
        flat = flatten_row(row, columns)
        values = [flat[c] for c in columns]
        ws.append(values)
        for i, v in enumerate(values):
            widths[i] = max(widths[i], len(str(v)))

    for i, width in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = min(width + 2, MAX_COLUMN_WIDTH)

    ws.freeze_panes = "A2"
    if columns:
        ws.auto_filter.ref = f"A1:{get_column_letter(len(columns))}{len(rows) + 1}"

    wb.save(path)
    return path
