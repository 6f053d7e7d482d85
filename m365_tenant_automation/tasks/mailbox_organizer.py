"""
Mailbox Organizer
For each mailbox category (room, shared, scheduling) keeps the category's
security group membership equal to the accounts Exchange classifies in that
category, and disables every classified account that is still enabled.
"""

from __future__ import annotations

import logging

from ..config import AutomationConfig
from ..exchange.mailboxes import MailboxCategory, MailboxService
from ..graph.directory import DirectoryService
from .base import BaseTask, TaskResult
from .membership import plan_membership

logger = logging.getLogger("m365_tenant_automation.tasks.mailbox_organizer")


class MailboxOrganizerTask(BaseTask):
    name = "mailbox_organizer"
    description = "Reconcile mailbox-category groups and disable resource accounts"

    def __init__(
        self,
        config: AutomationConfig,
        directory: DirectoryService,
        mailboxes: MailboxService,
    ):
        super().__init__(config)
        self.directory = directory
        self.mailboxes = mailboxes

    def run(self, result: TaskResult):
        # Categories are independent: a failure stops only its own category
        for category_tag, group_name in self.config.reconcile.category_groups.items():
            try:
                category = MailboxCategory(category_tag)
                summary = self.reconcile_category(category, group_name, result)
            except Exception as e:
                result.add_error(
                    f"{category_tag} -> '{group_name}' aborted: {type(e).__name__}: {e}"
                )
                continue
            result.add_data(category.value, summary)

    def reconcile_category(
        self,
        category: MailboxCategory,
        group_name: str,
        result: TaskResult,
    ) -> dict:
        group = self.directory.find_group(group_name)
        group_id = group["id"]

        members = self.directory.list_group_member_ids(group_id)
        classified = self.mailboxes.list_recipient_ids(category)
        plan = plan_membership(current=members, target=classified)

        logger.info(
            f"{category.value}: {len(classified)} accounts, {len(members)} members of "
            f"'{group_name}' (+{len(plan.to_add)} / -{len(plan.to_remove)})"
        )

        for member_id in plan.to_add:
            self.directory.add_group_member(group_id, member_id)
            logger.info(f"Added {member_id} to '{group_name}'")
            result.count_change()

        # Every classified account is checked, not only the newly added ones
        disabled = []
        for account_id in sorted(classified):
            if self.directory.is_account_enabled(account_id):
                self.directory.disable_account(account_id)
                logger.info(f"Disabled sign-in for {account_id}")
                disabled.append(account_id)
                result.count_change()

        for member_id in plan.to_remove:
            self.directory.remove_group_member(group_id, member_id)
            logger.info(f"Removed {member_id} from '{group_name}'")
            result.count_change()

        return {
            "group": group_name,
            "group_id": group_id,
            "classified": len(classified),
            "added": list(plan.to_add),
            "removed": list(plan.to_remove),
            "disabled": disabled,
        }
