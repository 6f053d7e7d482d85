"""
Identity & groups directory operations on top of GraphClient.
Groups, members, user account state, licenses and mail.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Optional

from .client import GraphClient

logger = logging.getLogger("m365_tenant_automation.graph.directory")

USER_ODATA_TYPE = "#microsoft.graph.user"
DIRECTORY_OBJECT_URL = "https://graph.microsoft.com/v1.0/directoryObjects/{id}"

SIGN_IN_SELECT = (
    "id,displayName,mail,userPrincipalName,accountEnabled,"
    "createdDateTime,signInActivity"
)


class DirectoryLookupError(Exception):
    """Base class for directory objects that could not be resolved."""
    pass


class GroupNotFoundError(DirectoryLookupError):
    pass


class AmbiguousGroupError(DirectoryLookupError):
    pass


class UserNotFoundError(DirectoryLookupError):
    pass


class LicenseNotFoundError(DirectoryLookupError):
    pass


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


class DirectoryService:
    """Identity operations used by the automation tasks."""

    def __init__(self, graph: GraphClient):
        self.graph = graph

    # ── Groups ──────────────────────────────────────────────────────────────

    def find_group(self, display_name: str) -> dict:
        """
        Resolve a group by exact display name.
        Raises GroupNotFoundError on zero matches and AmbiguousGroupError
        on more than one.
        """
        matches = self.graph.get_all_pages(
            "groups",
            params={
                "$filter": f"displayName eq '{_odata_quote(display_name)}'",
                "$select": "id,displayName",
            },
        )
        if not matches:
            raise GroupNotFoundError(f"No group named '{display_name}'")
        if len(matches) > 1:
            ids = ", ".join(m.get("id", "?") for m in matches)
            raise AmbiguousGroupError(
                f"{len(matches)} groups named '{display_name}': {ids}"
            )
        return matches[0]

    def list_group_members(self, group_id: str) -> list[dict]:
        """Direct members only; nested groups are not expanded."""
        return self.graph.get_all_pages(
            f"groups/{group_id}/members",
            params={"$select": "id"},
        )

    def list_group_member_ids(self, group_id: str) -> set[str]:
        return {m["id"] for m in self.list_group_members(group_id) if m.get("id")}

    def list_group_user_ids(self, group_id: str) -> set[str]:
        """Direct members that are users (devices, principals, groups dropped)."""
        return {
            m["id"]
            for m in self.list_group_members(group_id)
            if m.get("id") and m.get("@odata.type") == USER_ODATA_TYPE
        }

    def add_group_member(self, group_id: str, member_id: str) -> None:
        self.graph.post(
            f"groups/{group_id}/members/$ref",
            {"@odata.id": DIRECTORY_OBJECT_URL.format(id=member_id)},
        )

    def remove_group_member(self, group_id: str, member_id: str) -> None:
        self.graph.delete(f"groups/{group_id}/members/{member_id}/$ref")

    # ── Users ───────────────────────────────────────────────────────────────

    def find_user(self, user: str, select: Optional[str] = None) -> Optional[dict]:
        """Look up a user by id or UPN; None when it does not exist (yet)."""
        params = {"$select": select} if select else None
        data = self.graph.get(f"users/{user}", params=params)
        if data.get("_not_found"):
            return None
        return data

    def get_user(self, user: str, select: Optional[str] = None) -> dict:
        data = self.find_user(user, select=select)
        if data is None:
            raise UserNotFoundError(f"User '{user}' not found")
        return data

    def is_account_enabled(self, user_id: str) -> bool:
        user = self.get_user(user_id, select="id,accountEnabled")
        return bool(user.get("accountEnabled"))

    def disable_account(self, user_id: str) -> None:
        self.graph.patch(f"users/{user_id}", {"accountEnabled": False})

    def update_user(self, user_id: str, properties: dict) -> None:
        self.graph.patch(f"users/{user_id}", properties)

    def list_users_with_sign_in(self) -> list[dict]:
        """All users with sign-in activity (beta exposes signInActivity)."""
        return self.graph.get_all_pages(
            "users",
            params={"$select": SIGN_IN_SELECT},
            beta=True,
        )

    # ── Licenses ────────────────────────────────────────────────────────────

    def find_sku(self, sku_part_number: str) -> dict:
        skus = self.graph.get_all_pages(
            "subscribedSkus",
            params={"$select": "skuId,skuPartNumber,consumedUnits,prepaidUnits"},
            skip_top=True,
        )
        wanted = sku_part_number.lower()
        for sku in skus:
            if (sku.get("skuPartNumber") or "").lower() == wanted:
                available = sku.get("prepaidUnits", {}).get("enabled", 0) - sku.get(
                    "consumedUnits", 0
                )
                if available <= 0:
                    logger.warning(
                        f"SKU {sku['skuPartNumber']} has no free units "
                        f"({sku.get('consumedUnits', 0)} consumed)"
                    )
                return sku
        raise LicenseNotFoundError(
            f"No subscribed SKU with part number '{sku_part_number}'"
        )

    def assign_license(self, user_id: str, sku_id: str) -> None:
        self.graph.post(
            f"users/{user_id}/assignLicense",
            {
                "addLicenses": [{"skuId": sku_id, "disabledPlans": []}],
                "removeLicenses": [],
            },
        )

    # ── Mail ────────────────────────────────────────────────────────────────

    def send_mail(
        self,
        sender: str,
        recipients: list[str],
        subject: str,
        html_body: str,
        attachments: Optional[list[Path]] = None,
    ) -> None:
        message = {
            "subject": subject,
            "body": {"contentType": "HTML", "content": html_body},
            "toRecipients": [{"emailAddress": {"address": r}} for r in recipients],
            "attachments": [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": path.name,
                    "contentType": "text/csv",
                    "contentBytes": base64.b64encode(path.read_bytes()).decode("ascii"),
                }
                for path in (attachments or [])
            ],
        }
        self.graph.post(
            f"users/{sender}/sendMail",
            {"message": message, "saveToSentItems": True},
        )
