"""
Tests for the JSON run summary written after every task.
"""
import json

from m365_tenant_automation import __version__
from m365_tenant_automation.reporting import export_run_summary
from m365_tenant_automation.safety.guardian import ChangeGuardian
from m365_tenant_automation.tasks import TaskResult


def test_summary_contains_result_and_audit(tmp_path):
    result = TaskResult("mailbox_organizer")
    result.add_data("RoomMailbox", {"added": ["u1"], "removed": [], "disabled": ["u1"]})
    result.count_change(2)
    result.add_warning("recipient without directory id")

    guardian = ChangeGuardian(dry_run=True)
    guardian.validate_request("POST", "https://graph.microsoft.com/v1.0/groups/g1/members/$ref", {})

    path = export_run_summary(result, guardian.get_audit_record(), tmp_path / "out", "20240601_1200_ab")

    assert path.name == "mailbox_organizer_20240601_1200_ab.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["metadata"]["version"] == __version__
    assert payload["result"]["data"]["RoomMailbox"]["added"] == ["u1"]
    assert payload["result"]["metadata"]["changes"] == 2
    assert payload["change_guardian"]["mode"] == "DRY-RUN"
    assert payload["change_guardian"]["changes"][0]["applied"] is False


def test_failed_task_result():
    result = TaskResult("room_provisioning")
    assert result.succeeded
    result.add_error("PlacePropagationError: not confirmed")
    assert not result.succeeded
    assert result.to_dict()["metadata"]["errors"] == ["PlacePropagationError: not confirmed"]
