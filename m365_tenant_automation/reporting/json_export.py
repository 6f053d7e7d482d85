"""
JSON exporter — Writes a run summary: task result plus the change audit.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .. import __version__


def export_run_summary(
    task_result: Any,
    audit_record: dict,
    output_dir: Path,
    run_id: str,
) -> Path:
    """
    Write the run summary to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {
            "tool": "M365 Tenant Automation",
            "version": __version__,
            "run_id": run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
        },
        "result": task_result.to_dict(),
        **audit_record,
    }

    filepath = output_dir / f"{task_result.task_name}_{run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
