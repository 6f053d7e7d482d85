"""
In-memory stand-ins for DirectoryService and MailboxService.

They keep just enough tenant state for the tasks to run against and log
every mutating call in `mutations`, so tests can assert on exactly what a
run changed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from m365_tenant_automation.exchange.client import ExchangeAdminError
from m365_tenant_automation.graph.directory import (
    AmbiguousGroupError,
    GroupNotFoundError,
    LicenseNotFoundError,
    USER_ODATA_TYPE,
    UserNotFoundError,
)


class FakeDirectory:
    def __init__(self):
        self.groups: list[dict] = []                    # {"id", "displayName"}
        self.members: dict[str, dict[str, str]] = {}    # group id -> member id -> odata type
        self.users: dict[str, dict] = {}                # id or UPN -> user
        self.skus: list[dict] = []
        self.mutations: list[tuple] = []
        self.user_lookups = 0
        self.visible_after_lookups = 0                  # find_user returns None until exceeded

    # ── setup helpers ──

    def add_group(self, group_id: str, name: str, members=(), member_type=USER_ODATA_TYPE):
        self.groups.append({"id": group_id, "displayName": name})
        self.members[group_id] = {m: member_type for m in members}

    def add_user(self, user_id: str, enabled: bool = True, **props):
        self.users[user_id] = {"id": user_id, "accountEnabled": enabled, **props}

    def membership(self, group_id: str) -> set[str]:
        return set(self.members[group_id])

    # ── DirectoryService surface ──

    def find_group(self, display_name: str) -> dict:
        matches = [g for g in self.groups if g["displayName"] == display_name]
        if not matches:
            raise GroupNotFoundError(display_name)
        if len(matches) > 1:
            raise AmbiguousGroupError(display_name)
        return matches[0]

    def list_group_member_ids(self, group_id: str) -> set[str]:
        return set(self.members[group_id])

    def list_group_user_ids(self, group_id: str) -> set[str]:
        return {m for m, t in self.members[group_id].items() if t == USER_ODATA_TYPE}

    def add_group_member(self, group_id: str, member_id: str) -> None:
        self.mutations.append(("add", group_id, member_id))
        self.members[group_id][member_id] = USER_ODATA_TYPE

    def remove_group_member(self, group_id: str, member_id: str) -> None:
        self.mutations.append(("remove", group_id, member_id))
        del self.members[group_id][member_id]

    def find_user(self, user: str, select: Optional[str] = None) -> Optional[dict]:
        self.user_lookups += 1
        if self.user_lookups <= self.visible_after_lookups:
            return None
        return self.users.get(user)

    def get_user(self, user: str, select: Optional[str] = None) -> dict:
        if user not in self.users:
            raise UserNotFoundError(user)
        return self.users[user]

    def is_account_enabled(self, user_id: str) -> bool:
        return bool(self.get_user(user_id)["accountEnabled"])

    def disable_account(self, user_id: str) -> None:
        self.mutations.append(("disable", user_id))
        self.users[user_id]["accountEnabled"] = False

    def update_user(self, user_id: str, properties: dict) -> None:
        self.mutations.append(("update", user_id, dict(properties)))
        self.users[user_id].update(properties)

    def list_users_with_sign_in(self) -> list[dict]:
        return list(self.users.values())

    def find_sku(self, sku_part_number: str) -> dict:
        for sku in self.skus:
            if sku["skuPartNumber"].lower() == sku_part_number.lower():
                return sku
        raise LicenseNotFoundError(sku_part_number)

    def assign_license(self, user_id: str, sku_id: str) -> None:
        self.mutations.append(("assign_license", user_id, sku_id))
        self.users[user_id].setdefault("assignedLicenses", []).append({"skuId": sku_id})

    def send_mail(self, sender, recipients, subject, html_body, attachments=None) -> None:
        self.mutations.append((
            "send_mail", sender, tuple(recipients), subject,
            tuple(Path(a).name for a in (attachments or [])),
        ))
        self.last_mail_body = html_body


class FakeMailboxes:
    def __init__(self):
        self.recipients: dict[str, set[str]] = {}   # category tag -> directory object ids
        self.places: dict[str, dict] = {}
        self.place_writes = 0
        self.place_visible_after_writes = 0         # reads are stale until exceeded
        self.place_write_errors = 0                 # first N Set-Place calls fail
        self.calendar: dict[str, dict] = {}
        self.regional: dict[str, tuple] = {}
        self.created: list[dict] = []

    def create_room_mailbox(self, name, display_name, address, capacity=None, password=None) -> dict:
        mailbox = {"Name": name, "DisplayName": display_name, "PrimarySmtpAddress": address,
                   "Guid": f"guid-{name}", "RoomAccountEnabled": bool(password)}
        self.created.append(mailbox)
        return mailbox

    def set_place(self, identity, location) -> None:
        self.place_writes += 1
        if self.place_writes <= self.place_write_errors:
            raise ExchangeAdminError(400, f"Couldn't find object '{identity}'", "Set-Place")
        if self.place_writes > self.place_visible_after_writes:
            self.places[identity] = {
                "Building": location.building,
                "Floor": location.floor,
                "Capacity": location.capacity,
            }

    def get_place(self, identity) -> dict:
        return self.places.get(identity, {})

    def set_calendar_processing(self, identity, additional_response="") -> None:
        self.calendar[identity] = {"AutomateProcessing": "AutoAccept",
                                   "AdditionalResponse": additional_response}

    def get_calendar_processing(self, identity) -> dict:
        return self.calendar.get(identity, {})

    def set_regional_configuration(self, identity, language, time_zone) -> None:
        self.regional[identity] = (language, time_zone)

    def list_recipient_ids(self, category) -> set[str]:
        return set(self.recipients.get(category.value, set()))
