"""
Sign-in Inactivity Reporter
Lists accounts with no sign-in (interactive or not) within the threshold,
minus direct user members of the exclusion groups, writes the list to a
delimited file and mails it.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..config import AutomationConfig
from ..graph.directory import DirectoryService
from ..reporting.csv_export import export_inactivity_csv
from ..reporting.mail import render_inactivity_mail
from .base import BaseTask, TaskResult

logger = logging.getLogger("m365_tenant_automation.tasks.inactivity_report")

NEVER = "Never"
DATE_FORMAT = "%Y-%m-%d %H:%M"
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Graph ISO-8601 timestamp; None for absent or unparseable values."""
    if not value:
        return None
    # Graph can send 7 fractional digits; fromisoformat takes at most 6
    text = _EXCESS_FRACTION.sub(r"\1", value.replace("Z", "+00:00"))
    try:
        parsed = datetime.fromisoformat(text)
    except (ValueError, TypeError):
        logger.warning(f"Unparseable timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def latest_activity(
    interactive: Optional[datetime],
    non_interactive: Optional[datetime],
) -> Optional[datetime]:
    """The later of the two sign-ins; absent values never win."""
    present = [ts for ts in (interactive, non_interactive) if ts is not None]
    return max(present) if present else None


def is_inactive(latest: Optional[datetime], now: datetime, threshold_days: int) -> bool:
    """Never signed in, or last sign-in strictly before now - threshold."""
    if latest is None:
        return True
    return latest < now - timedelta(days=threshold_days)


def _format(ts: Optional[datetime], missing: str) -> str:
    if ts is None:
        return missing
    return ts.astimezone(timezone.utc).strftime(DATE_FORMAT)


def build_report_row(user: dict) -> dict:
    sign_in = user.get("signInActivity") or {}
    return {
        "DisplayName": user.get("displayName") or "",
        "Email": user.get("mail") or user.get("userPrincipalName") or "",
        "AccountStatus": "Enabled" if user.get("accountEnabled") else "Disabled",
        "CreationDate": _format(parse_timestamp(user.get("createdDateTime")), ""),
        "LastInteractiveSignIn": _format(
            parse_timestamp(sign_in.get("lastSignInDateTime")), NEVER
        ),
        "LastNonInteractiveSignIn": _format(
            parse_timestamp(sign_in.get("lastNonInteractiveSignInDateTime")), NEVER
        ),
    }


def select_inactive_users(
    users: list[dict],
    excluded_ids: set[str],
    now: datetime,
    threshold_days: int,
) -> list[dict]:
    """Users to report, in the order Graph returned them."""
    selected = []
    for user in users:
        if user.get("id") in excluded_ids:
            continue
        sign_in = user.get("signInActivity") or {}
        latest = latest_activity(
            parse_timestamp(sign_in.get("lastSignInDateTime")),
            parse_timestamp(sign_in.get("lastNonInteractiveSignInDateTime")),
        )
        if is_inactive(latest, now, threshold_days):
            selected.append(user)
    return selected


class InactivityReportTask(BaseTask):
    name = "inactivity_report"
    description = "Report accounts without recent sign-in and mail the report"

    def __init__(
        self,
        config: AutomationConfig,
        directory: DirectoryService,
        send_email: bool = True,
        now: Optional[datetime] = None,
    ):
        super().__init__(config)
        self.directory = directory
        self.send_email = send_email
        self.now = now

    def run(self, result: TaskResult):
        settings = self.config.report
        now = self.now or datetime.now(timezone.utc)

        excluded = self.collect_excluded_ids()
        users = self.directory.list_users_with_sign_in()
        inactive = select_inactive_users(users, excluded, now, settings.inactivity_days)
        rows = [build_report_row(u) for u in inactive]

        logger.info(
            f"{len(inactive)} of {len(users)} accounts inactive for more than "
            f"{settings.inactivity_days} days ({len(excluded)} excluded)"
        )

        report_path = export_inactivity_csv(
            rows,
            Path(settings.output_dir),
            now,
            delimiter=settings.delimiter,
            encoding=settings.encoding,
        )
        result.add_data("report_path", str(report_path))
        result.add_data("summary", {
            "users_scanned": len(users),
            "excluded": len(excluded),
            "inactive": len(rows),
        })

        if not self.send_email:
            logger.info("Email delivery skipped")
            return
        if not settings.sender or not settings.recipients:
            result.add_warning("No report sender/recipients configured; email not sent")
            return

        body = render_inactivity_mail(
            rows=rows,
            threshold_days=settings.inactivity_days,
            generated_at=now,
            total_users=len(users),
        )
        self.directory.send_mail(
            sender=settings.sender,
            recipients=list(settings.recipients),
            subject=f"{settings.subject} ({now:%Y-%m-%d})",
            html_body=body,
            attachments=[report_path],
        )
        result.count_change()
        logger.info(f"Report mailed to {', '.join(settings.recipients)}")

    def collect_excluded_ids(self) -> set[str]:
        excluded: set[str] = set()
        if not self.config.report.exclusion_groups:
            logger.warning("No exclusion groups configured; every inactive account will be reported")
        for group_name in self.config.report.exclusion_groups:
            group = self.directory.find_group(group_name)
            members = self.directory.list_group_user_ids(group["id"])
            logger.info(f"Excluding {len(members)} users of '{group_name}'")
            excluded |= members
        return excluded
