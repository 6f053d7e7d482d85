"""
Tests for the Exchange admin client and mailbox operations.
"""
import json

import httpx
import pytest

from m365_tenant_automation.exchange.client import ExchangeAdminClient, ExchangeAdminError
from m365_tenant_automation.exchange.mailboxes import MailboxCategory, MailboxService, RoomLocation
from m365_tenant_automation.safety.guardian import ChangeGuardian, SafetyViolation

TENANT = "00000000-1111-2222-3333-444444444444"


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    calls = []
    monkeypatch.setattr("m365_tenant_automation.exchange.client.time.sleep", calls.append)
    return calls


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request):
        self.requests.append(request)
        return self.responses.pop(0)

    def bodies(self):
        return [json.loads(r.content)["CmdletInput"] for r in self.requests]


def fail_first(error_type, response):
    """Handler raising a transport error once, then answering with response."""
    requests = []

    def handler(request):
        requests.append(request)
        if len(requests) == 1:
            raise error_type("timed out", request=request)
        return response

    handler.requests = requests
    return handler


def open_client(handler, dry_run=False):
    guardian = ChangeGuardian(dry_run=dry_run)
    client = ExchangeAdminClient(
        "token", TENANT, "contoso.onmicrosoft.com", guardian,
        transport=httpx.MockTransport(handler),
    )
    return client, guardian


class TestInvoke:
    def test_request_shape(self):
        handler = Recorder(httpx.Response(200, json={"value": [{"Building": "HQ"}]}))
        client, _ = open_client(handler)
        with client:
            result = client.invoke("Get-Place", {"Identity": "room@contoso.com", "Floor": None})

        assert result == [{"Building": "HQ"}]
        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == (
            f"https://outlook.office365.com/adminapi/beta/{TENANT}/InvokeCommand"
        )
        assert request.headers["X-AnchorMailbox"].startswith("UPN:SystemMailbox{")
        assert request.headers["X-AnchorMailbox"].endswith("@contoso.onmicrosoft.com")
        # None parameters are dropped
        assert handler.bodies() == [
            {"CmdletName": "Get-Place", "Parameters": {"Identity": "room@contoso.com"}}
        ]

    def test_pages_by_reposting(self):
        next_link = f"https://outlook.office365.com/adminapi/beta/{TENANT}/InvokeCommand?$skiptoken=2"
        handler = Recorder(
            httpx.Response(200, json={"value": [{"Id": 1}], "@odata.nextLink": next_link}),
            httpx.Response(200, json={"value": [{"Id": 2}]}),
        )
        client, _ = open_client(handler)
        with client:
            assert client.invoke("Get-Recipient") == [{"Id": 1}, {"Id": 2}]

        assert handler.requests[1].url.params["$skiptoken"] == "2"
        assert handler.bodies()[0] == handler.bodies()[1]

    def test_throttling_is_retried(self, no_sleep):
        handler = Recorder(
            httpx.Response(429, headers={"Retry-After": "1"}),
            httpx.Response(200, json={"value": []}),
        )
        client, _ = open_client(handler)
        with client:
            assert client.invoke("Get-Mailbox") == []
        assert no_sleep == [2.0]

    def test_http_date_retry_after_falls_back_to_backoff(self, no_sleep):
        handler = Recorder(
            httpx.Response(503, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            httpx.Response(200, json={"value": []}),
        )
        client, _ = open_client(handler)
        with client:
            assert client.invoke("Get-Recipient") == []
        assert no_sleep == [2.0]

    @pytest.mark.parametrize("cmdlet", ["New-Mailbox", "Set-Place", "Set-CalendarProcessing"])
    def test_write_cmdlet_read_timeout_is_not_repeated(self, cmdlet, no_sleep):
        handler = fail_first(httpx.ReadTimeout, httpx.Response(200, json={"value": []}))
        client, _ = open_client(handler)
        with client, pytest.raises(httpx.ReadTimeout):
            client.invoke(cmdlet, {"Identity": "room@contoso.com"})
        assert len(handler.requests) == 1
        assert no_sleep == []

    def test_write_cmdlet_connect_timeout_is_retried(self):
        handler = fail_first(httpx.ConnectTimeout, httpx.Response(200, json={"value": []}))
        client, _ = open_client(handler)
        with client:
            client.invoke("Set-Place", {"Identity": "room@contoso.com", "Floor": 4})
        assert len(handler.requests) == 2

    def test_read_cmdlet_timeout_is_retried(self, no_sleep):
        handler = fail_first(httpx.ReadTimeout, httpx.Response(200, json={"value": [{"Floor": 4}]}))
        client, _ = open_client(handler)
        with client:
            assert client.invoke("Get-Place", {"Identity": "room@contoso.com"}) == [{"Floor": 4}]
        assert len(handler.requests) == 2
        assert no_sleep == [2.0]

    def test_cmdlet_error_message(self):
        body = {"error": {"code": "BadRequest",
                          "message": "|Microsoft.Exchange.Management.Tasks.ManagementObjectNotFoundException|"
                                     "The operation couldn't be performed because object 'room' couldn't be found."}}
        client, _ = open_client(lambda r: httpx.Response(400, json=body))
        with client, pytest.raises(ExchangeAdminError) as exc:
            client.invoke("Set-Place", {"Identity": "room"})

        assert exc.value.cmdlet == "Set-Place"
        assert str(exc.value).endswith("object 'room' couldn't be found.")

    def test_dry_run_skips_writes_but_not_reads(self):
        handler = Recorder(httpx.Response(200, json={"value": [{"Floor": 4}]}))
        client, guardian = open_client(handler, dry_run=True)
        with client:
            assert client.invoke("Set-Place", {"Identity": "room", "Floor": 4}) == []
            assert client.invoke("Get-Place", {"Identity": "room"}) == [{"Floor": 4}]

        assert [b["CmdletName"] for b in handler.bodies()] == ["Get-Place"]
        assert guardian.changes[0]["operation"] == "Set-Place"

    def test_disallowed_cmdlet(self):
        handler = Recorder()
        client, _ = open_client(handler)
        with client, pytest.raises(SafetyViolation):
            client.invoke("Remove-Mailbox", {"Identity": "ceo@contoso.com"})
        assert handler.requests == []


class TestMailboxService:
    def test_create_room_with_account(self):
        handler = Recorder(httpx.Response(200, json={"value": [{"Guid": "abc"}]}))
        client, guardian = open_client(handler)
        with client:
            mailbox = MailboxService(client).create_room_mailbox(
                "Room-4A", "Room 4A", "room-4a@contoso.com", capacity=8, password="S3cret!"
            )

        assert mailbox == {"Guid": "abc"}
        params = handler.bodies()[0]["Parameters"]
        assert params["Room"] is True
        assert params["EnableRoomMailboxAccount"] is True
        assert params["RoomMailboxPassword"] == "S3cret!"
        # The password never reaches the audit trail
        assert guardian.changes[0]["payload"]["RoomMailboxPassword"] == "***"

    def test_set_place_parameters(self):
        handler = Recorder(httpx.Response(200, json={"value": []}))
        client, _ = open_client(handler)
        location = RoomLocation(building="HQ", floor=0, capacity=4, city="Oslo")
        with client:
            MailboxService(client).set_place("room@contoso.com", location)

        assert handler.bodies()[0]["Parameters"] == {
            "Identity": "room@contoso.com",
            "Building": "HQ",
            "Floor": 0,
            "Capacity": 4,
            "City": "Oslo",
        }
        assert location.matches({"Building": "HQ", "Floor": 0})

    def test_calendar_processing_auto_accept(self):
        handler = Recorder(httpx.Response(200, json={"value": []}))
        client, _ = open_client(handler)
        with client:
            MailboxService(client).set_calendar_processing("room@contoso.com")

        params = handler.bodies()[0]["Parameters"]
        assert params["AutomateProcessing"] == "AutoAccept"
        assert params["AddAdditionalResponse"] is False
        assert "AdditionalResponse" not in params

    def test_list_recipient_ids(self, caplog):
        body = {"value": [
            {"ExternalDirectoryObjectId": "u1", "PrimarySmtpAddress": "a@contoso.com"},
            {"ExternalDirectoryObjectId": "", "PrimarySmtpAddress": "b@contoso.com"},
            {"ExternalDirectoryObjectId": "u3", "PrimarySmtpAddress": "c@contoso.com"},
        ]}
        handler = Recorder(httpx.Response(200, json=body))
        client, _ = open_client(handler)
        with client:
            ids = MailboxService(client).list_recipient_ids(MailboxCategory.SHARED)

        assert ids == {"u1", "u3"}
        assert handler.bodies()[0]["Parameters"] == {
            "RecipientTypeDetails": "SharedMailbox",
            "ResultSize": "Unlimited",
        }
        assert "b@contoso.com" in caplog.text
