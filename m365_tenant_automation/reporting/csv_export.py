"""
CSV exporter — Writes the inactivity report as a delimited text file.
"""

from __future__ import annotations

import csv
from datetime import datetime
from pathlib import Path

INACTIVITY_FIELDS = [
    "DisplayName",
    "Email",
    "AccountStatus",
    "CreationDate",
    "LastInteractiveSignIn",
    "LastNonInteractiveSignIn",
]


def export_inactivity_csv(
    rows: list[dict],
    output_dir: Path,
    generated_at: datetime,
    delimiter: str = ";",
    encoding: str = "utf-8-sig",
) -> Path:
    """
    Write report rows under the fixed header.

    Returns:
        Path to the created file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    report_path = output_dir / f"InactiveUsers_{generated_at:%Y%m%d}.csv"

    with open(report_path, "w", newline="", encoding=encoding) as fh:
        writer = csv.DictWriter(
            fh, fieldnames=INACTIVITY_FIELDS, delimiter=delimiter, extrasaction="ignore"
        )
        writer.writeheader()
        for row in rows:
            writer.writerow(row)

    return report_path
