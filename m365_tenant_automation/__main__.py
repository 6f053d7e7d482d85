"""
M365 Tenant Automation — Command line entry point

Usage:
    python -m m365_tenant_automation provision-room --name ConfRoom1 \\
        --address confroom1@contoso.com --building "HQ" --floor 2 --capacity 8
    python -m m365_tenant_automation organize-mailboxes [--dry-run]
    python -m m365_tenant_automation inactivity-report [--no-email] [--dry-run]
    python -m m365_tenant_automation permissions

Connection options go before the sub-command:
    python -m m365_tenant_automation --profile contoso-prod organize-mailboxes
    python -m m365_tenant_automation --config automation.json inactivity-report

Profile management:
    python -m m365_tenant_automation profile add <name> --tenant-id ... --client-id ... --organization ...
    python -m m365_tenant_automation profile list
    python -m m365_tenant_automation profile remove <name>
    python -m m365_tenant_automation profile set-default <name>
"""

from __future__ import annotations

import argparse
import contextlib
import getpass
import logging
import os
import sys
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import (
    AutomationConfig,
    AuthConfig,
    CertificateAuth,
    DelegatedAuth,
    GRAPH_SCOPES,
    EXCHANGE_SCOPES,
)
from .safety.guardian import ChangeGuardian
from .auth.authenticator import Authenticator
from .graph.client import GraphClient
from .graph.directory import DirectoryService
from .exchange.client import ExchangeAdminClient
from .exchange.mailboxes import MailboxService, RoomLocation
from .tasks import (
    BaseTask,
    MailboxOrganizerTask,
    RoomProvisioningTask,
    RoomRequest,
    InactivityReportTask,
)
from .reporting import export_run_summary
from .profiles import ProfileStore, TenantProfile, resolve_profile, validate_organization

logger = logging.getLogger("m365_tenant_automation")

# Sub-commands that talk to Exchange as well as Graph
EXCHANGE_COMMANDS = {"provision-room", "organize-mailboxes"}


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    action = args.profile_action

    if action == "list":
        return _profile_list()
    elif action == "add":
        return _profile_add(args)
    elif action == "remove":
        return _profile_remove(args)
    elif action == "set-default":
        return _profile_set_default(args)
    print("Usage: python -m m365_tenant_automation profile {add|list|remove|set-default}")
    return 0


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m m365_tenant_automation profile add <name> \\")
        print("    --tenant-id <GUID> --client-id <GUID> --organization <domain>")
        return 0

    print(f"\n  {'Name':<20s} {'Tenant ID':<38s} {'Organization':<32s} {'Default'}")
    print(f"  {'-'*20} {'-'*38} {'-'*32} {'-'*7}")
    for p in profiles:
        default_marker = "  *" if p.name == store.default_profile else ""
        display = p.tenant_display_name or ""
        name_col = f"{p.name}" + (f" ({display})" if display else "")
        print(f"  {name_col:<20s} {p.tenant_id:<38s} {p.organization:<32s}{default_marker}")
    print()
    return 0


def _profile_add(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    name = args.profile_name
    if store.get(name):
        print(f"  Profile '{name}' already exists. It will be overwritten.")

    try:
        profile = TenantProfile(
            name=name,
            tenant_id=args.profile_tenant_id,
            client_id=args.profile_client_id,
            cert_path=args.profile_cert_path or "./base64.txt",
            organization=args.profile_organization,
            tenant_display_name=args.display_name or "",
            notes=args.notes or "",
        )
    except ValueError as e:
        print(f"  Profile '{name}' not saved: {e}", file=sys.stderr)
        return 1
    set_as_default = args.set_default or not store.profiles
    store.add(profile, set_default=set_as_default)
    print(f"  Profile '{name}' saved.")
    if set_as_default:
        print("  Set as default profile.")
    return 0


def _profile_remove(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.remove(args.profile_name):
        print(f"  Profile '{args.profile_name}' removed.")
        return 0
    print(f"  Profile '{args.profile_name}' not found.")
    return 1


def _profile_set_default(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.set_default(args.profile_name):
        print(f"  Default profile set to '{args.profile_name}'.")
        return 0
    print(f"  Profile '{args.profile_name}' not found.")
    return 1


def _cmd_permissions() -> int:
    print("\n  Required application permissions:\n")
    for permission, reason in Authenticator.list_required_permissions().items():
        print(f"  {permission:34s} {reason}")
    print()
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="m365_tenant_automation",
        description="M365 tenant automation: room provisioning, mailbox groups, inactivity report",
    )

    # --- Connection options ---
    parser.add_argument("--profile", "-p", default=None,
                        help="Tenant profile name to use (run 'profile list' to see available)")
    parser.add_argument("--config", "-c", type=Path,
                        help="Path to JSON configuration file")
    parser.add_argument("--delegated", action="store_true",
                        help="Use delegated (device-code) authentication instead of certificate")
    parser.add_argument("--cert-path", type=Path,
                        help="Path to base64-encoded certificate file (overrides profile)")
    parser.add_argument("--tenant-id", default=None,
                        help="Tenant ID (overrides profile)")
    parser.add_argument("--client-id", default=None,
                        help="Client ID (overrides profile)")
    parser.add_argument("--organization", default=None,
                        help="Exchange organization domain (overrides profile)")
    parser.add_argument("--output-dir", "-o", type=Path, default=None,
                        help="Directory for reports and run summaries")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- provision-room ---
    room_p = subparsers.add_parser("provision-room", help="Provision a licensed room account")
    room_p.add_argument("--name", required=True, help="Mailbox name (alias)")
    room_p.add_argument("--address", required=True, help="Primary SMTP address")
    room_p.add_argument("--display-name", help="Display name (defaults to --name)")
    room_p.add_argument("--building", required=True)
    room_p.add_argument("--floor", type=int, required=True)
    room_p.add_argument("--floor-label", default="")
    room_p.add_argument("--capacity", type=int, default=None)
    room_p.add_argument("--street", default="")
    room_p.add_argument("--city", default="")
    room_p.add_argument("--state", default="")
    room_p.add_argument("--postal-code", default="")
    room_p.add_argument("--country", default="", help="Two-letter country/region code")
    room_p.add_argument("--sku", default=None, help="License SKU part number (overrides config)")
    room_p.add_argument("--usage-location", default=None, help="Usage location (overrides config)")
    room_p.add_argument("--enable-account", action="store_true",
                        help="Enable the room account for sign-in; password from "
                             "$M365_ROOM_PASSWORD or prompt")

    # --- organize-mailboxes ---
    org_p = subparsers.add_parser("organize-mailboxes",
                                  help="Reconcile mailbox-category groups and disable accounts")
    org_p.add_argument("--dry-run", action="store_true",
                       help="Record planned changes without applying them")

    # --- inactivity-report ---
    rep_p = subparsers.add_parser("inactivity-report",
                                  help="Report accounts without recent sign-in")
    rep_p.add_argument("--no-email", action="store_true", help="Write the report file only")
    rep_p.add_argument("--dry-run", action="store_true",
                       help="Record the email send without sending it")

    subparsers.add_parser("permissions", help="List required API permissions")

    # --- profile management ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", dest="profile_tenant_id", required=True,
                       help="Azure AD tenant ID (GUID)")
    add_p.add_argument("--client-id", dest="profile_client_id", required=True,
                       help="App registration client ID (GUID)")
    add_p.add_argument("--cert-path", dest="profile_cert_path", default="./base64.txt",
                       help="Path to base64-encoded PFX (default: ./base64.txt)")
    add_p.add_argument("--organization", dest="profile_organization", required=True,
                       help="Exchange organization domain, e.g. contoso.onmicrosoft.com")
    add_p.add_argument("--display-name", help="Friendly tenant display name")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Raised when no usable tenant credentials can be assembled."""
    pass


def build_config(args: argparse.Namespace) -> AutomationConfig:
    """Build configuration from config file, profile and CLI flags (CLI wins)."""
    if args.config:
        config = AutomationConfig.from_file(args.config)
    else:
        config = AutomationConfig()

    mode = "delegated" if args.delegated else config.auth.mode

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise ConfigurationError(
                f"Profile '{args.profile}' not found. Use 'profile list' to see available profiles."
            )
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    existing = config.auth.certificate or config.auth.delegated
    if profile:
        tenant_id = args.tenant_id or profile.tenant_id
        client_id = args.client_id or profile.client_id
        cert_path = str(args.cert_path) if args.cert_path else profile.resolve_cert_path()
        organization = args.organization or profile.organization
    elif args.tenant_id and args.client_id:
        tenant_id = args.tenant_id
        client_id = args.client_id
        cert_path = str(args.cert_path) if args.cert_path else "./base64.txt"
        organization = args.organization or config.organization
    elif existing:
        tenant_id = existing.tenant_id
        client_id = existing.client_id
        cert_path = (
            str(args.cert_path) if args.cert_path
            else config.auth.certificate.certificate_path if config.auth.certificate
            else "./base64.txt"
        )
        organization = args.organization or config.organization
    else:
        raise ConfigurationError(
            "No tenant credentials found. Use --profile <name>, "
            "--tenant-id X --client-id Y, or --config config.json."
        )

    if mode == "delegated":
        auth = AuthConfig(
            mode="delegated",
            delegated=DelegatedAuth(tenant_id=tenant_id, client_id=client_id),
        )
    else:
        password = config.auth.certificate.certificate_password if config.auth.certificate else ""
        auth = AuthConfig(
            mode="certificate",
            certificate=CertificateAuth(
                tenant_id=tenant_id,
                client_id=client_id,
                certificate_path=cert_path,
                certificate_password=password,
            ),
        )

    report = config.report
    if args.output_dir:
        report = replace(report, output_dir=str(args.output_dir))

    return replace(
        config,
        auth=auth,
        organization=organization,
        report=report,
        dry_run=getattr(args, "dry_run", False) or config.dry_run,
        verbose=args.verbose or config.verbose,
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    # Silence verbose HTTP request logging
    for noisy in ("httpx", "httpcore", "msal"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Task wiring
# ---------------------------------------------------------------------------

def build_room_request(args: argparse.Namespace) -> RoomRequest:
    password = None
    if args.enable_account:
        password = os.environ.get("M365_ROOM_PASSWORD") or getpass.getpass(
            "Enter the room account password: "
        )
    return RoomRequest(
        name=args.name,
        display_name=args.display_name or args.name,
        address=args.address,
        location=RoomLocation(
            building=args.building,
            floor=args.floor,
            capacity=args.capacity,
            floor_label=args.floor_label,
            street=args.street,
            city=args.city,
            state=args.state,
            postal_code=args.postal_code,
            country_or_region=args.country,
        ),
        password=password,
        usage_location=args.usage_location,
        sku_part_number=args.sku,
    )


def build_task(
    args: argparse.Namespace,
    config: AutomationConfig,
    directory: DirectoryService,
    mailboxes: Optional[MailboxService],
) -> BaseTask:
    if args.command == "provision-room":
        return RoomProvisioningTask(config, directory, mailboxes, build_room_request(args))
    if args.command == "organize-mailboxes":
        return MailboxOrganizerTask(config, directory, mailboxes)
    if args.command == "inactivity-report":
        return InactivityReportTask(config, directory, send_email=not args.no_email)
    raise ValueError(f"Unknown command: {args.command}")


def run_command(args: argparse.Namespace, config: AutomationConfig) -> int:
    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
    guardian = ChangeGuardian(dry_run=config.dry_run)
    authenticator = Authenticator(config.auth)

    print("=" * 70)
    print(f" M365 Tenant Automation: {args.command}")
    print(f" Mode: {'DRY-RUN (no changes will be sent)' if config.dry_run else 'APPLY'}")
    print(f" Run ID: {run_id}")
    print("=" * 70)

    graph_token = authenticator.acquire_token(GRAPH_SCOPES)

    with contextlib.ExitStack() as stack:
        graph = stack.enter_context(GraphClient(graph_token, guardian))
        directory = DirectoryService(graph)

        mailboxes = None
        if args.command in EXCHANGE_COMMANDS:
            exchange_token = authenticator.acquire_token(EXCHANGE_SCOPES)
            exchange = stack.enter_context(ExchangeAdminClient(
                exchange_token,
                tenant_id=config.auth.tenant_id,
                organization=config.organization,
                guardian=guardian,
            ))
            mailboxes = MailboxService(exchange)

        task = build_task(args, config, directory, mailboxes)
        result = task.execute()

    summary_path = export_run_summary(
        result, guardian.get_audit_record(), Path(config.report.output_dir), run_id
    )

    print("\n" + "=" * 70)
    print(f" {'COMPLETE' if result.succeeded else 'FAILED'}: {result.metadata['changes']} changes"
          f"{' planned' if config.dry_run else ''}, {len(result.metadata['errors'])} errors")
    for error in result.metadata["errors"]:
        print(f"   ! {error}")
    print(f" Summary: {summary_path.resolve()}")
    print("=" * 70)

    return 0 if result.succeeded else 1


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)

    if args.command == "profile":
        return _cmd_profile(args)
    if args.command == "permissions":
        return _cmd_permissions()
    if not args.command:
        print(__doc__)
        return 2

    try:
        config = build_config(args)
        if args.command == "provision-room" and config.dry_run:
            # The propagation loops only converge against real writes
            raise ConfigurationError("provision-room cannot run in dry-run mode.")
        if args.command in EXCHANGE_COMMANDS:
            try:
                validate_organization(config.organization)
            except ValueError as e:
                raise ConfigurationError(f"{e}. Use --organization or a profile with one.") from e
    except ConfigurationError as e:
        print(f"\n{e}", file=sys.stderr)
        return 1

    configure_logging(config.verbose)
    return run_command(args, config)


if __name__ == "__main__":
    sys.exit(main())
