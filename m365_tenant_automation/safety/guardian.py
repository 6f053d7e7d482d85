"""
Change Guardian — Restricts tenant writes to the mutations this tool performs.
Validates every outbound write, keeps an audit trail of changes, and
suppresses writes entirely in dry-run mode.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("m365_tenant_automation.safety")

# ─── Write Allow-List ────────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Graph endpoints the procedures are allowed to mutate
ALLOWED_GRAPH_WRITES = [
    ("POST", re.compile(r"/groups/[^/]+/members/\$ref$")),
    ("DELETE", re.compile(r"/groups/[^/]+/members/[^/]+/\$ref$")),
    ("PATCH", re.compile(r"/users/[^/]+$")),
    ("POST", re.compile(r"/users/[^/]+/assignLicense$")),
    ("POST", re.compile(r"/users/[^/]+/sendMail$")),
]

# Exchange cmdlets that only read
READ_CMDLETS = {
    "Get-Mailbox",
    "Get-Place",
    "Get-CalendarProcessing",
    "Get-Recipient",
    "Get-MailboxRegionalConfiguration",
}

# Exchange cmdlets the procedures are allowed to run
ALLOWED_CMDLETS = {
    "New-Mailbox",
    "Set-Place",
    "Set-CalendarProcessing",
    "Set-MailboxRegionalConfiguration",
}


class SafetyViolation(Exception):
    """Raised when a write outside the allow-list is attempted."""
    pass


class ChangeGuardian:
    """
    Validates every outbound write against the allow-list.
    Maintains an audit log of all tenant changes (performed or planned).
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.changes: list[dict] = []
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = _utcnow()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate a Graph request.
        Returns True if the request should be sent, False if it is a write
        suppressed by dry-run. Raises SafetyViolation if not allowed.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper not in WRITE_METHODS:
            return True

        path = url.split("?", 1)[0]
        for allowed_method, pattern in ALLOWED_GRAPH_WRITES:
            if method_upper == allowed_method and pattern.search(path):
                return self._record_change(
                    "graph", f"{method_upper} {path}", _summarize_body(body)
                )

        self._record_violation(method_upper, url, "Write outside allow-list")
        raise SafetyViolation(
            f"SAFETY VIOLATION: Write not allowed: {method_upper} {url}"
        )

    def validate_cmdlet(self, cmdlet: str, parameters: Optional[dict] = None) -> bool:
        """
        Validate an Exchange cmdlet invocation.
        Same contract as validate_request().
        """
        self.checks_performed += 1

        if cmdlet in READ_CMDLETS:
            return True
        if cmdlet in ALLOWED_CMDLETS:
            return self._record_change("exchange", cmdlet, _redact(parameters))

        self._record_violation("CMDLET", cmdlet, "Cmdlet outside allow-list")
        raise SafetyViolation(f"SAFETY VIOLATION: Cmdlet not allowed: {cmdlet}")

    def _record_change(self, service: str, operation: str, payload: Optional[dict]) -> bool:
        self.changes.append({
            "timestamp": _utcnow(),
            "service": service,
            "operation": operation,
            "payload": payload,
            "applied": not self.dry_run,
        })
        if self.dry_run:
            logger.info(f"DRY-RUN: skipped {service} {operation}")
            return False
        logger.debug(f"Applying {service} change: {operation}")
        return True

    def _record_violation(self, method: str, target: str, reason: str):
        """Record a safety violation for audit."""
        violation = {
            "timestamp": _utcnow(),
            "method": method,
            "target": target,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.critical(f"SAFETY VIOLATION: {reason}: {method} {target}")

    def get_audit_record(self) -> dict:
        """Return the full change audit record."""
        return {
            "change_guardian": {
                "mode": "DRY-RUN" if self.dry_run else "APPLY",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "changes": self.changes,
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }


_SECRET_KEYS = {"RoomMailboxPassword", "Password"}


def _redact(parameters: Optional[dict]) -> Optional[dict]:
    if not parameters:
        return parameters
    return {
        k: ("***" if k in _SECRET_KEYS else v) for k, v in parameters.items()
    }


def _summarize_body(body: Optional[dict]) -> Optional[dict]:
    """Keep mail audit entries small: subject and recipients, no attachments."""
    if not body or "message" not in body:
        return body
    message = body["message"]
    return {
        "subject": message.get("subject"),
        "toRecipients": [
            r.get("emailAddress", {}).get("address")
            for r in message.get("toRecipients", [])
        ],
        "attachments": [a.get("name") for a in message.get("attachments", [])],
    }


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
