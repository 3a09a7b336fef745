"""
JSON exporter — Writes the full run record: metadata, rows, errors and changes.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .. import __version__


def export_json(
    result: Any,
    audit_record: dict,
    output_dir: Path,
    name: str,
    run_id: str,
) -> Path:
    """
    Write a task result to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "run": {
            "tool": "M365 Admin Toolkit",
            "version": __version__,
            "run_id": run_id,
            "task": name,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
        },
        "columns": result.columns,
        **result.to_dict(),
        **audit_record,
    }

    filepath = output_dir / f"{name}_{run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
