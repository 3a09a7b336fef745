"""Reporting package — tabular report output."""

from pathlib import Path
from typing import Any

from .csv_export import export_csv
from .excel_export import export_xlsx
from .json_export import export_json


def export_report(
    result: Any,
    audit_record: dict,
    output_dir: Path,
    run_id: str,
    formats: list[str],
) -> list[Path]:
    """Write a task result in every requested format."""
    created = []
    if "csv" in formats:
        created.append(export_csv(result.rows, result.columns, output_dir, result.task_name, run_id))
    if "xlsx" in formats:
        created.append(export_xlsx(result.rows, result.columns, output_dir, result.task_name, run_id))
    if "json" in formats:
        created.append(export_json(result, audit_record, output_dir, result.task_name, run_id))
    return created


__all__ = [
    "export_csv",
    "export_xlsx",
    "export_json",
    "export_report",
]
