from .base import BaseTask, TaskResult
from .membership import MembershipPlan, plan_membership
from .mailbox_organizer import MailboxOrganizerTask
from .room_provisioning import (
    RoomProvisioningTask,
    RoomRequest,
    ProvisioningError,
    PlacePropagationError,
    IdentityPropagationError,
)
from .inactivity_report import InactivityReportTask

__all__ = [
    "BaseTask",
    "TaskResult",
    "MembershipPlan",
    "plan_membership",
    "MailboxOrganizerTask",
    "RoomProvisioningTask",
    "RoomRequest",
    "ProvisioningError",
    "PlacePropagationError",
    "IdentityPropagationError",
    "InactivityReportTask",
]
