"""Reporting package — report files, run summaries and mail bodies."""

from .csv_export import export_inactivity_csv
from .json_export import export_run_summary
from .mail import render_inactivity_mail

__all__ = [
    "export_inactivity_csv",
    "export_run_summary",
    "render_inactivity_mail",
]
