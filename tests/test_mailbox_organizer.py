"""
Tests for mailbox-category group reconciliation.

Covers:
- Pure membership planning
- Convergence to the classified set from arbitrary starting membership
- Idempotence of a second run
- Disable monotonicity (nothing is ever re-enabled)
- Independent failure handling per category
"""
from types import SimpleNamespace

import pytest

from m365_tenant_automation.config import AutomationConfig, ReconcileConfig
from m365_tenant_automation.exchange.mailboxes import MailboxCategory
from m365_tenant_automation.tasks import MailboxOrganizerTask, plan_membership

from fakes import FakeDirectory, FakeMailboxes


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def directory():
    d = FakeDirectory()
    d.add_group("g-room", "Room Mailboxes", members=["room-1", "stale-1"])
    d.add_group("g-shared", "Shared Mailboxes")
    d.add_group("g-sched", "Scheduling Mailboxes", members=["sched-1"])
    for uid in ("room-1", "room-2", "stale-1", "shared-1", "shared-2", "sched-1"):
        d.add_user(uid, enabled=True)
    d.users["room-1"]["accountEnabled"] = False
    return d


@pytest.fixture
def mailboxes():
    m = FakeMailboxes()
    m.recipients = {
        "RoomMailbox": {"room-1", "room-2"},
        "SharedMailbox": {"shared-1", "shared-2"},
        "SchedulingMailbox": {"sched-1"},
    }
    return m


@pytest.fixture
def config():
    return AutomationConfig()


# =============================================================================
# plan_membership
# =============================================================================

class TestPlanMembership:
    def test_diff(self):
        plan = plan_membership(current={"a", "b", "c"}, target={"b", "c", "d", "e"})
        assert plan.to_add == ("d", "e")
        assert plan.to_remove == ("a",)

    def test_equal_sets_are_empty_plan(self):
        plan = plan_membership(current=["x", "y"], target=["y", "x"])
        assert plan.is_empty

    def test_empty_target_removes_everything(self):
        plan = plan_membership(current={"b", "a"}, target=set())
        assert plan.to_add == ()
        assert plan.to_remove == ("a", "b")

    def test_duplicates_in_input_are_ignored(self):
        plan = plan_membership(current=["a", "a"], target=["a", "b", "b"])
        assert plan.to_add == ("b",)
        assert plan.to_remove == ()


# =============================================================================
# Reconciliation
# =============================================================================

class TestMailboxOrganizer:
    def test_converges_membership_to_classified_set(self, config, directory, mailboxes):
        result = MailboxOrganizerTask(config, directory, mailboxes).execute()

        assert result.succeeded
        assert directory.membership("g-room") == {"room-1", "room-2"}
        assert directory.membership("g-shared") == {"shared-1", "shared-2"}
        assert directory.membership("g-sched") == {"sched-1"}

    def test_disables_every_enabled_classified_account(self, config, directory, mailboxes):
        MailboxOrganizerTask(config, directory, mailboxes).execute()

        for uid in ("room-1", "room-2", "shared-1", "shared-2", "sched-1"):
            assert directory.users[uid]["accountEnabled"] is False
        # Already-disabled room-1 was only read, never written
        assert ("disable", "room-1") not in directory.mutations
        # Removed members keep their state
        assert directory.users["stale-1"]["accountEnabled"] is True

    def test_existing_members_are_still_disabled(self, config, directory, mailboxes):
        # sched-1 is already a member; the enabled check still applies to it
        MailboxOrganizerTask(config, directory, mailboxes).execute()
        assert ("disable", "sched-1") in directory.mutations
        assert not any(m[0] == "add" and m[2] == "sched-1" for m in directory.mutations)

    def test_second_run_makes_no_mutations(self, config, directory, mailboxes):
        MailboxOrganizerTask(config, directory, mailboxes).execute()
        first_run = len(directory.mutations)

        result = MailboxOrganizerTask(config, directory, mailboxes).execute()

        assert len(directory.mutations) == first_run
        assert result.metadata["changes"] == 0

    def test_adds_and_disables_before_removing(self, config, directory, mailboxes):
        MailboxOrganizerTask(config, directory, mailboxes).execute()
        room_ops = [m for m in directory.mutations if "g-room" in m or m[0] == "disable"]
        kinds = [m[0] for m in room_ops]
        assert kinds.index("remove") > kinds.index("add")
        assert kinds.index("remove") > kinds.index("disable")

    def test_never_enables_accounts(self, config, directory, mailboxes):
        MailboxOrganizerTask(config, directory, mailboxes).execute()
        mailboxes.recipients["RoomMailbox"] = {"room-2"}   # room-1 changed category
        MailboxOrganizerTask(config, directory, mailboxes).execute()

        assert directory.users["room-1"]["accountEnabled"] is False
        assert directory.membership("g-room") == {"room-2"}
        for mutation in directory.mutations:
            if mutation[0] == "update":
                assert mutation[2].get("accountEnabled") is not True

    def test_summary_per_category(self, config, directory, mailboxes):
        result = MailboxOrganizerTask(config, directory, mailboxes).execute()
        room = result.data["RoomMailbox"]
        assert room["added"] == ["room-2"]
        assert room["removed"] == ["stale-1"]
        assert room["disabled"] == ["room-2"]
        assert room["classified"] == 2
        # room: add + remove + disable, shared: 2 adds + 2 disables, sched: 1 disable
        assert result.metadata["changes"] == 8


class TestCategoryFailures:
    def test_missing_group_aborts_only_its_category(self, directory, mailboxes):
        config = AutomationConfig(reconcile=ReconcileConfig(category_groups={
            "RoomMailbox": "Room Mailboxes",
            "SharedMailbox": "No Such Group",
            "SchedulingMailbox": "Scheduling Mailboxes",
        }))
        result = MailboxOrganizerTask(config, directory, mailboxes).execute()

        assert not result.succeeded
        assert len(result.metadata["errors"]) == 1
        assert "GroupNotFoundError" in result.metadata["errors"][0]
        assert "SharedMailbox" not in result.data
        assert directory.membership("g-room") == {"room-1", "room-2"}
        assert directory.membership("g-sched") == {"sched-1"}
        # Shared accounts were not touched
        assert directory.users["shared-1"]["accountEnabled"] is True

    def test_ambiguous_group_is_an_error(self, config, directory, mailboxes):
        directory.add_group("g-room-2", "Room Mailboxes")
        result = MailboxOrganizerTask(config, directory, mailboxes).execute()
        assert any("AmbiguousGroupError" in e for e in result.metadata["errors"])
        assert "RoomMailbox" not in result.data

    def test_mutation_failure_stops_the_category(self, config, directory, mailboxes):
        # room-2 is classified but has no user object: the enabled check fails
        del directory.users["room-2"]
        result = MailboxOrganizerTask(config, directory, mailboxes).execute()

        assert any("UserNotFoundError" in e for e in result.metadata["errors"])
        # Removal phase of the room category never ran
        assert "stale-1" in directory.membership("g-room")
        assert "SharedMailbox" in result.data

    def test_unknown_category_tag_does_not_stop_the_others(self, directory, mailboxes):
        # ReconcileConfig rejects unknown tags; a hand-built config can still carry one
        config = SimpleNamespace(reconcile=SimpleNamespace(category_groups={
            "EquipmentMailbox": "Equipment",
            "RoomMailbox": "Room Mailboxes",
        }))
        result = MailboxOrganizerTask(config, directory, mailboxes).execute()

        assert len(result.metadata["errors"]) == 1
        assert result.metadata["errors"][0].startswith("EquipmentMailbox -> 'Equipment' aborted: ValueError")
        assert directory.membership("g-room") == {"room-1", "room-2"}
        assert result.data["RoomMailbox"]["added"] == ["room-2"]


def test_category_enum_matches_recipient_type_tags():
    assert MailboxCategory("RoomMailbox") is MailboxCategory.ROOM
    assert MailboxCategory.SHARED.value == "SharedMailbox"
    assert MailboxCategory.SCHEDULING.value == "SchedulingMailbox"
