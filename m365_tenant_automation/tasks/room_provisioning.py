"""
Room Account Provisioner
Creates a room resource mailbox, writes its place metadata, configures the
booking policy, waits for the linked Entra user, makes it license-eligible
and assigns the room license.

Exchange and Entra are eventually consistent with each other, so two
steps poll with a fixed number of attempts and a fixed delay:
  - place metadata is re-written and read back until building and floor stick
  - the Entra user is looked up until it becomes visible to Graph
Both raise once their attempts are exhausted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from ..config import AutomationConfig, RetryPolicy
from ..exchange.client import ExchangeAdminError
from ..exchange.mailboxes import MailboxService, RoomLocation
from ..graph.directory import DirectoryService
from .base import BaseTask, TaskResult

logger = logging.getLogger("m365_tenant_automation.tasks.room_provisioning")


class ProvisioningError(Exception):
    """Base class for provisioning steps that did not converge."""
    pass


class PlacePropagationError(ProvisioningError):
    pass


class IdentityPropagationError(ProvisioningError):
    pass


@dataclass(frozen=True)
class RoomRequest:
    """A room account to provision."""
    name: str
    display_name: str
    address: str
    location: RoomLocation
    password: Optional[str] = None          # Enables the room account for sign-in
    usage_location: Optional[str] = None    # Overrides config.rooms.usage_location
    sku_part_number: Optional[str] = None   # Overrides config.rooms.sku_part_number


class RoomProvisioningTask(BaseTask):
    name = "room_provisioning"
    description = "Provision a licensed room resource account"

    def __init__(
        self,
        config: AutomationConfig,
        directory: DirectoryService,
        mailboxes: MailboxService,
        room: RoomRequest,
    ):
        super().__init__(config)
        self.directory = directory
        self.mailboxes = mailboxes
        self.room = room

    def run(self, result: TaskResult):
        room = self.room
        settings = self.config.rooms

        mailbox = self.mailboxes.create_room_mailbox(
            name=room.name,
            display_name=room.display_name,
            address=room.address,
            capacity=room.location.capacity,
            password=room.password,
        )
        logger.info(f"Created room mailbox {room.address}")
        result.count_change()
        result.add_data("mailbox", {
            "address": room.address,
            "guid": mailbox.get("Guid") or mailbox.get("ExchangeGuid"),
        })

        self.apply_location(room.address, room.location, settings.place_retry)
        result.count_change()

        self.mailboxes.set_calendar_processing(room.address, settings.additional_response)
        logger.info(f"Booking policy set to AutoAccept for {room.address}")
        result.count_change()

        if settings.language or settings.time_zone:
            self.mailboxes.set_regional_configuration(
                room.address, settings.language, settings.time_zone
            )
            result.count_change()

        user = self.wait_for_identity(room.address, settings.identity_retry)
        user_id = user["id"]

        usage_location = room.usage_location or settings.usage_location
        self.directory.update_user(user_id, {
            "usageLocation": usage_location,
            "passwordPolicies": "DisablePasswordExpiration",
        })
        logger.info(f"Set usage location {usage_location} on {room.address}")
        result.count_change()

        sku = self.directory.find_sku(room.sku_part_number or settings.sku_part_number)
        self.directory.assign_license(user_id, sku["skuId"])
        logger.info(f"Assigned {sku['skuPartNumber']} to {room.address}")
        result.count_change()

        result.add_data("verification", self.verify(user_id, sku["skuId"]))

    def apply_location(self, identity: str, location: RoomLocation, policy: RetryPolicy) -> dict:
        """Write place metadata until a read-back shows it; at most policy.attempts writes."""
        last_error: Optional[Exception] = None
        for attempt in range(1, policy.attempts + 1):
            try:
                self.mailboxes.set_place(identity, location)
                place = self.mailboxes.get_place(identity)
                if location.matches(place):
                    logger.info(f"Place metadata confirmed for {identity} (attempt {attempt})")
                    return place
                last_error = None
                logger.info(
                    f"Place metadata not visible yet for {identity} "
                    f"(attempt {attempt}/{policy.attempts})"
                )
            except ExchangeAdminError as e:
                last_error = e
                logger.warning(
                    f"Set-Place failed for {identity} "
                    f"(attempt {attempt}/{policy.attempts}): {e}"
                )
            if attempt < policy.attempts:
                time.sleep(policy.delay_seconds)

        raise PlacePropagationError(
            f"Place metadata for {identity} not confirmed after {policy.attempts} attempts"
        ) from last_error

    def wait_for_identity(self, address: str, policy: RetryPolicy) -> dict:
        """Poll Graph for the mailbox's Entra user; at most policy.attempts lookups."""
        for attempt in range(1, policy.attempts + 1):
            user = self.directory.find_user(address, select="id,userPrincipalName")
            if user:
                logger.info(f"Entra user for {address} visible (attempt {attempt})")
                return user
            logger.info(
                f"Waiting for Entra user {address} (attempt {attempt}/{policy.attempts})"
            )
            if attempt < policy.attempts:
                time.sleep(policy.delay_seconds)

        raise IdentityPropagationError(
            f"Entra user for {address} not visible after {policy.attempts} attempts"
        )

    def verify(self, user_id: str, sku_id: str) -> dict:
        """Read back what was configured and print it."""
        address = self.room.address
        user = self.directory.get_user(
            user_id,
            select="id,userPrincipalName,accountEnabled,usageLocation,assignedLicenses",
        )
        place = self.mailboxes.get_place(address)
        booking = self.mailboxes.get_calendar_processing(address)

        licensed = any(
            lic.get("skuId") == sku_id for lic in user.get("assignedLicenses", [])
        )
        summary = {
            "userPrincipalName": user.get("userPrincipalName"),
            "accountEnabled": user.get("accountEnabled"),
            "usageLocation": user.get("usageLocation"),
            "licensed": licensed,
            "building": place.get("Building"),
            "floor": place.get("Floor"),
            "capacity": place.get("Capacity"),
            "automateProcessing": booking.get("AutomateProcessing"),
        }

        print(f"\n  Room account: {address}")
        for key, value in summary.items():
            print(f"    {key:22s} {value}")

        if not licensed:
            # Assignment can lag the read-back; reported, not fatal
            logger.warning(f"License {sku_id} not yet listed on {address}")
        return summary
