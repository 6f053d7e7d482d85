"""
Mail body rendering for the inactivity report.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = Path(__file__).parent / "templates"
PREVIEW_ROWS = 25


def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_inactivity_mail(
    rows: list[dict],
    threshold_days: int,
    generated_at: datetime,
    total_users: int,
) -> str:
    """HTML body: counts plus the first rows; the full list is attached."""
    template = _environment().get_template("inactivity_mail.html.j2")
    return template.render(
        rows=rows[:PREVIEW_ROWS],
        inactive_count=len(rows),
        truncated=len(rows) > PREVIEW_ROWS,
        threshold_days=threshold_days,
        generated_at=generated_at.strftime("%Y-%m-%d %H:%M UTC"),
        total_users=total_users,
    )
