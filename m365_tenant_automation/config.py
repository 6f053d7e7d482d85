"""
Configuration module for M365 Tenant Automation.
Defines tenant connection settings, retry policies, category-to-group
mappings and report settings. All configuration objects are immutable and
passed explicitly into each procedure.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass(frozen=True)
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Falls back to $M365_CERT_PASSWORD, then prompt


@dataclass(frozen=True)
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str


@dataclass(frozen=True)
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None

    @property
    def tenant_id(self) -> str:
        source = self.certificate if self.mode == "certificate" else self.delegated
        return source.tenant_id if source else ""


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

# ─── Exchange Online Admin API Settings ─────────────────────────────────────

EXCHANGE_BASE_URL = "https://outlook.office365.com/adminapi/beta"
EXCHANGE_SCOPES = ["https://outlook.office365.com/.default"]
# Exchange routes app-only admin calls through this arbitration mailbox
EXCHANGE_ANCHOR_MAILBOX = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"

# Throttling (HTTP 429/503/504), both services
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor
REQUEST_TIMEOUT_SECONDS = 60.0

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops


# ─── Mailbox Categories ─────────────────────────────────────────────────────

ROOM_MAILBOX = "RoomMailbox"
SHARED_MAILBOX = "SharedMailbox"
SCHEDULING_MAILBOX = "SchedulingMailbox"

DEFAULT_CATEGORY_GROUPS = {
    ROOM_MAILBOX: "Room Mailboxes",
    SHARED_MAILBOX: "Shared Mailboxes",
    SCHEDULING_MAILBOX: "Scheduling Mailboxes",
}
MAILBOX_CATEGORIES = (ROOM_MAILBOX, SHARED_MAILBOX, SCHEDULING_MAILBOX)


# ─── Procedure Settings ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-count, fixed-delay polling policy for propagation delays."""
    attempts: int
    delay_seconds: float

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("RetryPolicy.attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("RetryPolicy.delay_seconds must not be negative")


@dataclass(frozen=True)
class ReconcileConfig:
    """Mailbox category → security group display name."""
    category_groups: Mapping[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_GROUPS)
    )

    def __post_init__(self):
        unknown = sorted(set(self.category_groups) - set(MAILBOX_CATEGORIES))
        if unknown:
            raise ValueError(
                f"Unknown mailbox categories {unknown}; expected {list(MAILBOX_CATEGORIES)}"
            )
        # Read-only view over a private copy
        object.__setattr__(
            self, "category_groups", MappingProxyType(dict(self.category_groups))
        )


@dataclass(frozen=True)
class RoomProvisioningConfig:
    """Controls for room account provisioning."""
    place_retry: RetryPolicy = RetryPolicy(attempts=6, delay_seconds=10)
    identity_retry: RetryPolicy = RetryPolicy(attempts=30, delay_seconds=10)
    usage_location: str = "US"
    sku_part_number: str = "Microsoft_Teams_Rooms_Pro"
    additional_response: str = ""
    language: str = ""                    # e.g. "en-US"; empty skips regional settings
    time_zone: str = ""                   # e.g. "Pacific Standard Time"


@dataclass(frozen=True)
class ReportConfig:
    """Controls for the sign-in inactivity report."""
    exclusion_groups: tuple[str, ...] = ()
    inactivity_days: int = 90
    delimiter: str = ";"
    encoding: str = "utf-8-sig"
    sender: str = ""
    recipients: tuple[str, ...] = ()
    subject: str = "Inactive accounts report"
    output_dir: str = "./reports"


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass(frozen=True)
class AutomationConfig:
    """Top-level configuration for all procedures."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    organization: str = ""        # Exchange organization, e.g. contoso.onmicrosoft.com
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    rooms: RoomProvisioningConfig = field(default_factory=RoomProvisioningConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    dry_run: bool = False
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "AutomationConfig":
        """Load configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "AutomationConfig":
        config = cls()

        auth = config.auth
        if "auth" in data:
            auth_data = data["auth"]
            certificate = None
            delegated = None
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
            auth = AuthConfig(
                mode=auth_data.get("mode", "certificate"),
                certificate=certificate,
                delegated=delegated,
            )

        reconcile = config.reconcile
        if "reconcile" in data:
            groups = data["reconcile"].get("category_groups")
            if groups:
                reconcile = ReconcileConfig(category_groups=dict(groups))

        rooms = config.rooms
        if "rooms" in data:
            rooms_data = dict(data["rooms"])
            for key in ("place_retry", "identity_retry"):
                if key in rooms_data:
                    rooms_data[key] = RetryPolicy(**rooms_data[key])
            rooms = replace(rooms, **_known(rooms, rooms_data))

        report = config.report
        if "report" in data:
            report_data = dict(data["report"])
            for key in ("exclusion_groups", "recipients"):
                if key in report_data:
                    report_data[key] = tuple(report_data[key])
            report = replace(report, **_known(report, report_data))

        return cls(
            auth=auth,
            organization=data.get("organization", ""),
            reconcile=reconcile,
            rooms=rooms,
            report=report,
            dry_run=data.get("dry_run", False),
            verbose=data.get("verbose", False),
        )


def _known(instance, values: dict) -> dict:
    """Drop keys that are not fields of the target dataclass."""
    return {k: v for k, v in values.items() if hasattr(instance, k)}


# ─── Required Permissions ────────────────────────────────────────────────────

REQUIRED_PERMISSIONS = {
    # Microsoft Graph (application)
    "User.ReadWrite.All": "Disable accounts, set usage location and password policy",
    "Group.Read.All": "Resolve groups by display name",
    "GroupMember.ReadWrite.All": "Add and remove category group members",
    "Organization.Read.All": "Enumerate subscribed license SKUs",
    "LicenseAssignment.ReadWrite.All": "Assign the room license",
    "AuditLog.Read.All": "Read sign-in activity for the inactivity report",
    "Mail.Send": "Send the inactivity report",

    # Office 365 Exchange Online (application)
    "Exchange.ManageAsApp": "Run mailbox, place and recipient cmdlets",
}
