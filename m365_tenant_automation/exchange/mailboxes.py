"""
Mailbox & calendar directory operations on top of ExchangeAdminClient.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from .. import config
from .client import ExchangeAdminClient

logger = logging.getLogger("m365_tenant_automation.exchange.mailboxes")


class MailboxCategory(str, enum.Enum):
    """Recipient type tags reconciled into groups."""
    ROOM = config.ROOM_MAILBOX
    SHARED = config.SHARED_MAILBOX
    SCHEDULING = config.SCHEDULING_MAILBOX


@dataclass(frozen=True)
class RoomLocation:
    """Place metadata written with Set-Place."""
    building: str
    floor: int
    capacity: Optional[int] = None
    floor_label: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country_or_region: str = ""   # ISO 3166-1 alpha-2

    def to_parameters(self) -> dict:
        params = {
            "Building": self.building,
            "Floor": self.floor,
            "Capacity": self.capacity,
            "FloorLabel": self.floor_label,
            "Street": self.street,
            "City": self.city,
            "State": self.state,
            "PostalCode": self.postal_code,
            "CountryOrRegion": self.country_or_region,
        }
        return {k: v for k, v in params.items() if v not in (None, "")}

    def matches(self, place: dict) -> bool:
        """True when the read-back place shows the written building and floor."""
        floor = place.get("Floor")
        return (
            str(place.get("Building") or "") == self.building
            and floor is not None
            and str(floor) == str(self.floor)
        )


class MailboxService:
    """Mailbox operations used by the automation tasks."""

    def __init__(self, exchange: ExchangeAdminClient):
        self.exchange = exchange

    # ── Room mailboxes ──────────────────────────────────────────────────────

    def create_room_mailbox(
        self,
        name: str,
        display_name: str,
        address: str,
        capacity: Optional[int] = None,
        password: Optional[str] = None,
    ) -> dict:
        parameters = {
            "Name": name,
            "DisplayName": display_name,
            "PrimarySmtpAddress": address,
            "Room": True,
            "ResourceCapacity": capacity,
        }
        if password:
            parameters["EnableRoomMailboxAccount"] = True
            parameters["MicrosoftOnlineServicesID"] = address
            parameters["RoomMailboxPassword"] = password
        created = self.exchange.invoke("New-Mailbox", parameters)
        return created[0] if created else {}

    def get_place(self, identity: str) -> dict:
        places = self.exchange.invoke("Get-Place", {"Identity": identity})
        return places[0] if places else {}

    def set_place(self, identity: str, location: RoomLocation) -> None:
        self.exchange.invoke("Set-Place", {"Identity": identity, **location.to_parameters()})

    def get_calendar_processing(self, identity: str) -> dict:
        settings = self.exchange.invoke("Get-CalendarProcessing", {"Identity": identity})
        return settings[0] if settings else {}

    def set_calendar_processing(self, identity: str, additional_response: str = "") -> None:
        """Auto-accept bookings and keep meeting subject and body intact."""
        self.exchange.invoke(
            "Set-CalendarProcessing",
            {
                "Identity": identity,
                "AutomateProcessing": "AutoAccept",
                "AddOrganizerToSubject": False,
                "DeleteComments": False,
                "DeleteSubject": False,
                "RemovePrivateProperty": False,
                "ProcessExternalMeetingMessages": True,
                "AddAdditionalResponse": bool(additional_response),
                "AdditionalResponse": additional_response or None,
            },
        )

    def set_regional_configuration(self, identity: str, language: str, time_zone: str) -> None:
        self.exchange.invoke(
            "Set-MailboxRegionalConfiguration",
            {
                "Identity": identity,
                "Language": language or None,
                "TimeZone": time_zone or None,
                "LocalizeDefaultFolderName": bool(language),
            },
        )

    # ── Recipients ──────────────────────────────────────────────────────────

    def list_recipient_ids(self, category: MailboxCategory) -> set[str]:
        """Directory object ids of every recipient classified as `category`."""
        recipients = self.exchange.invoke(
            "Get-Recipient",
            {"RecipientTypeDetails": category.value, "ResultSize": "Unlimited"},
        )
        ids = set()
        for r in recipients:
            object_id = r.get("ExternalDirectoryObjectId")
            if object_id:
                ids.add(object_id)
            else:
                logger.warning(
                    f"{category.value} {r.get('PrimarySmtpAddress', '?')} has no "
                    f"directory object id; skipped"
                )
        return ids
