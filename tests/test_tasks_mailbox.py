"""
Tests for mailbox tasks with fake Exchange and Graph clients.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from m365_admin_toolkit.graph.client import GraphAPIError
from m365_admin_toolkit.tasks import (
    AuditLogTask,
    AutoRepliesTask,
    ConvertSharedTask,
    MailboxAccessTask,
    MailboxFoldersTask,
    MailboxPermissionsTask,
    SetAutoReplyTask,
)
from m365_admin_toolkit.tasks.base import STATUS_ERROR, STATUS_PLANNED, STATUS_SKIPPED, STATUS_SUCCESS
from tests.conftest import mailbox


class TestConvertShared:

    @pytest.mark.asyncio
    async def test_failures_are_recorded_and_processing_continues(self, make_context, fake_exchange):
        mailboxes = {
            "ann@contoso.com": mailbox("ann@contoso.com"),
            "bob@contoso.com": mailbox("bob@contoso.com", kind="SharedMailbox"),
            "carl@contoso.com": mailbox("carl@contoso.com"),
            "dave@contoso.com": mailbox("dave@contoso.com"),
        }
        fake_exchange.get_mailbox.side_effect = lambda identity: mailboxes.get(identity)

        async def set_type(identity, mailbox_type):
            if identity == "carl@contoso.com":
                raise RuntimeError("The operation couldn't be performed")
            return False

        fake_exchange.set_mailbox_type.side_effect = set_type
        task = ConvertSharedTask(
            make_context(exchange=fake_exchange),
            identity=["ann@contoso.com", "ghost@contoso.com", "bob@contoso.com", "carl@contoso.com", "dave@contoso.com"],
        )
        result = await task.execute()

        assert not result.failed
        by_upn = {row["UserPrincipalName"]: row["Status"] for row in result.rows}
        assert by_upn == {
            "ghost@contoso.com": STATUS_ERROR,
            "ann@contoso.com": STATUS_PLANNED,
            "bob@contoso.com": STATUS_SKIPPED,
            "carl@contoso.com": STATUS_ERROR,
            "dave@contoso.com": STATUS_PLANNED,
        }
        assert result.has_item_errors
        assert result.columns[-2:] == ["Status", "Detail"]
        assert fake_exchange.set_mailbox_type.await_count == 3

    @pytest.mark.asyncio
    async def test_applied_conversion_is_success(self, make_context, fake_exchange, apply_guard):
        fake_exchange.get_mailbox.return_value = mailbox("ann@contoso.com")
        fake_exchange.set_mailbox_type.return_value = True
        task = ConvertSharedTask(make_context(guard=apply_guard, exchange=fake_exchange), identity=["ann@contoso.com"])
        result = await task.execute()
        assert result.rows[0]["Status"] == STATUS_SUCCESS
        assert result.metadata["mode"] == "APPLY"

    @pytest.mark.asyncio
    async def test_domain_selection_with_disabled_only(self, make_context, fake_exchange):
        fake_exchange.get_mailboxes.return_value = [
            mailbox("ann@contoso.com", disabled=True),
            mailbox("bob@contoso.com"),
            mailbox("eve@fabrikam.com", disabled=True),
        ]
        fake_exchange.set_mailbox_type.return_value = False
        task = ConvertSharedTask(
            make_context(exchange=fake_exchange), domain=["contoso.com"], disabled_only=True,
        )
        result = await task.execute()
        fake_exchange.get_mailboxes.assert_awaited_once_with("UserMailbox")
        assert [r["UserPrincipalName"] for r in result.rows] == ["ann@contoso.com"]

    @pytest.mark.asyncio
    async def test_refuses_to_convert_everything(self, make_context, fake_exchange):
        result = await ConvertSharedTask(make_context(exchange=fake_exchange)).execute()
        assert result.failed
        fake_exchange.get_mailboxes.assert_not_awaited()


@pytest.mark.asyncio
async def test_mailbox_permissions_rows(make_context, fake_exchange):
    shared = mailbox("team@contoso.com", kind="SharedMailbox")
    shared.grant_send_on_behalf_to = ["carol@contoso.com"]
    fake_exchange.get_mailboxes.return_value = [shared]
    fake_exchange.get_mailbox_permissions.return_value = [{"User": "bob@contoso.com", "AccessRights": "FullAccess"}]
    fake_exchange.get_recipient_permissions.return_value = [{"Trustee": "ann@contoso.com", "AccessRights": "SendAs"}]

    result = await MailboxPermissionsTask(make_context(exchange=fake_exchange), recipient_type="SharedMailbox").execute()

    assert [(r["PermissionType"], r["Grantee"]) for r in result.rows] == [
        ("FullAccess", "bob@contoso.com"),
        ("SendAs", "ann@contoso.com"),
        ("SendOnBehalf", "carol@contoso.com"),
    ]
    assert "Status" not in result.columns


class TestMailboxAccess:

    @pytest.mark.asyncio
    async def test_grant_skips_existing_access(self, make_context, fake_exchange):
        fake_exchange.get_mailbox_permissions.side_effect = lambda mb: (
            [{"User": "Bob@contoso.com", "AccessRights": "FullAccess"}] if mb == "team@contoso.com" else []
        )
        fake_exchange.add_mailbox_permission.return_value = False
        task = MailboxAccessTask(
            make_context(exchange=fake_exchange),
            identity=["team@contoso.com", "sales@contoso.com"],
            user="bob@contoso.com",
            automapping=False,
        )
        result = await task.execute()
        assert [r["Status"] for r in result.rows] == [STATUS_SKIPPED, STATUS_PLANNED]
        fake_exchange.add_mailbox_permission.assert_awaited_once_with(
            "sales@contoso.com", "bob@contoso.com", automapping=False
        )

    @pytest.mark.asyncio
    async def test_requires_user(self, make_context, fake_exchange):
        result = await MailboxAccessTask(make_context(exchange=fake_exchange), identity=["team@contoso.com"]).execute()
        assert result.failed


class TestMailboxFolders:

    @pytest.mark.asyncio
    async def test_min_items_and_failed_mailbox_continues(self, make_context, fake_exchange):
        fake_exchange.get_mailboxes.return_value = [
            mailbox("ann@contoso.com"), mailbox("bob@contoso.com"), mailbox("carl@contoso.com"),
        ]

        def folder_statistics(identity):
            if identity == "bob@contoso.com":
                raise RuntimeError("Mailbox database is offline")
            return [
                {"FolderPath": "/Inbox", "FolderType": "Inbox", "ItemsInFolder": 120,
                 "ItemsInFolderAndSubfolders": 150, "FolderSize": "12 MB (12,582,912 bytes)"},
                {"FolderPath": "/Junk Email", "FolderType": "JunkEmail", "ItemsInFolder": 3},
                {"FolderPath": "/Sync Issues", "FolderType": "SyncIssues", "ItemsInFolder": None},
            ]

        fake_exchange.get_folder_statistics.side_effect = folder_statistics
        task = MailboxFoldersTask(make_context(exchange=fake_exchange), recipient_type="UserMailbox", min_items=10)
        result = await task.execute()

        assert not result.failed
        fake_exchange.get_mailboxes.assert_awaited_once_with("UserMailbox")
        assert [(r["Mailbox"], r["FolderPath"]) for r in result.rows] == [
            ("ann@contoso.com", "/Inbox"), ("carl@contoso.com", "/Inbox"),
        ]
        assert result.rows[0]["ItemsInFolderAndSubfolders"] == 150
        assert result.has_item_errors
        assert result.metadata["errors"] == ["bob@contoso.com: RuntimeError: Mailbox database is offline"]
        assert "Status" not in result.columns

    @pytest.mark.asyncio
    async def test_unknown_identity_is_an_error_not_a_row(self, make_context, fake_exchange):
        fake_exchange.get_mailbox.side_effect = lambda identity: (
            mailbox(identity) if identity == "ann@contoso.com" else None
        )
        fake_exchange.get_folder_statistics.return_value = [{"FolderPath": "/Inbox", "ItemsInFolder": 1}]
        task = MailboxFoldersTask(make_context(exchange=fake_exchange), identity=["ann@contoso.com", "ghost@contoso.com"])
        result = await task.execute()
        assert [r["Mailbox"] for r in result.rows] == ["ann@contoso.com"]
        assert result.metadata["errors"] == ["ghost@contoso.com: Mailbox not found"]
        assert result.metadata["items_enumerated"] == 2


def fake_graph():
    graph = MagicMock()
    graph.get = AsyncMock()
    graph.patch = AsyncMock(return_value={"_planned": True})
    graph.get_all_pages = AsyncMock(return_value=[])
    return graph


class TestAutoReplies:

    @pytest.mark.asyncio
    async def test_report_with_missing_mailbox_warning(self, make_context):
        graph = fake_graph()
        graph.get.side_effect = lambda endpoint: (
            {"value": [], "_not_found": True} if endpoint.startswith("users/ghost")
            else {"status": "alwaysEnabled", "externalAudience": "all", "internalReplyMessage": "Away"}
        )
        result = await AutoRepliesTask(make_context(graph=graph), identity=["ann@contoso.com", "ghost@contoso.com"]).execute()
        assert len(result.rows) == 1
        assert result.rows[0]["ReplyStatus"] == "alwaysEnabled"
        assert len(result.metadata["warnings"]) == 1

    @pytest.mark.asyncio
    async def test_set_scheduled_reply(self, make_context):
        graph = fake_graph()
        graph.get.return_value = {"status": "disabled"}
        task = SetAutoReplyTask(
            make_context(graph=graph),
            identity=["ann@contoso.com"],
            internal_message="On leave",
            start="2024-07-01T08:00:00",
            end="2024-07-15T17:00:00",
        )
        result = await task.execute()
        endpoint, body = graph.patch.await_args.args
        assert endpoint == "users/ann@contoso.com/mailboxSettings"
        setting = body["automaticRepliesSetting"]
        assert setting["status"] == "scheduled"
        assert setting["externalReplyMessage"] == "On leave"
        assert setting["scheduledEndDateTime"] == {"dateTime": "2024-07-15T17:00:00", "timeZone": "UTC"}
        assert result.rows[0]["Status"] == STATUS_PLANNED

    @pytest.mark.asyncio
    async def test_report_read_failure_keeps_rows_clean(self, make_context):
        graph = fake_graph()

        async def get(endpoint):
            if endpoint.startswith("users/a@contoso.com/"):
                raise GraphAPIError(500, "Internal error", endpoint)
            return {"status": "disabled", "externalAudience": "none"}

        graph.get.side_effect = get
        result = await AutoRepliesTask(make_context(graph=graph), identity=["a@contoso.com", "b@contoso.com"]).execute()

        assert [r["UserPrincipalName"] for r in result.rows] == ["b@contoso.com"]
        assert result.rows[0]["ReplyStatus"] == "disabled"
        assert "Status" not in result.columns
        assert result.has_item_errors
        assert result.metadata["errors"][0].startswith("a@contoso.com: GraphAPIError")

    @pytest.mark.asyncio
    async def test_schedule_with_offset_is_sent_as_utc(self, make_context):
        graph = fake_graph()
        graph.get.return_value = {"status": "disabled"}
        task = SetAutoReplyTask(
            make_context(graph=graph),
            identity=["ann@contoso.com"],
            internal_message="On leave",
            start="2026-11-01T09:00:00+02:00",
            end="2026-11-03T17:30:00+02:00",
            time_zone="W. Europe Standard Time",
        )
        await task.execute()
        setting = graph.patch.await_args.args[1]["automaticRepliesSetting"]
        assert setting["scheduledStartDateTime"] == {"dateTime": "2026-11-01T07:00:00", "timeZone": "UTC"}
        assert setting["scheduledEndDateTime"] == {"dateTime": "2026-11-03T15:30:00", "timeZone": "UTC"}

    @pytest.mark.asyncio
    async def test_schedule_without_offset_uses_time_zone(self, make_context):
        graph = fake_graph()
        graph.get.return_value = {"status": "disabled"}
        task = SetAutoReplyTask(
            make_context(graph=graph),
            identity=["ann@contoso.com"],
            internal_message="On leave",
            start="2026-11-01T09:00:00",
            end="2026-11-03T17:30:00",
            time_zone="W. Europe Standard Time",
        )
        await task.execute()
        setting = graph.patch.await_args.args[1]["automaticRepliesSetting"]
        assert setting["scheduledStartDateTime"] == {
            "dateTime": "2026-11-01T09:00:00", "timeZone": "W. Europe Standard Time",
        }

    @pytest.mark.asyncio
    async def test_schedule_mixing_offset_and_local_time_fails(self, make_context):
        graph = fake_graph()
        task = SetAutoReplyTask(
            make_context(graph=graph),
            identity=["ann@contoso.com"],
            internal_message="On leave",
            start="2026-11-01T09:00:00+02:00",
            end="2026-11-03T17:30:00",
        )
        result = await task.execute()
        assert result.failed
        graph.patch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_schedule_end_must_follow_start(self, make_context):
        task = SetAutoReplyTask(
            make_context(graph=fake_graph()),
            identity=["ann@contoso.com"],
            internal_message="On leave",
            start="2024-07-15",
            end="2024-07-01",
        )
        assert (await task.execute()).failed

    @pytest.mark.asyncio
    async def test_disable_already_disabled_is_skipped(self, make_context):
        graph = fake_graph()
        graph.get.return_value = {"status": "disabled"}
        result = await SetAutoReplyTask(make_context(graph=graph), identity=["ann@contoso.com"], action="disable").execute()
        assert result.rows[0]["Status"] == STATUS_SKIPPED
        graph.patch.assert_not_awaited()


@pytest.mark.asyncio
async def test_audit_log_parses_audit_data(make_context, fake_exchange):
    fake_exchange.search_unified_audit_log.return_value = [
        {
            "CreationDate": "2024-05-30T10:00:00Z",
            "UserIds": "ann@contoso.com",
            "Operations": "MailItemsAccessed",
            "RecordType": "ExchangeItem",
            "AuditData": json.dumps({"Workload": "Exchange", "ClientIP": "203.0.113.7"}),
        },
        {"CreationDate": "2024-05-30T11:00:00Z", "AuditData": "{broken"},
    ]
    task = AuditLogTask(
        make_context(exchange=fake_exchange),
        start="2024-05-25", end="2024-06-01", operations=["MailItemsAccessed"], result_size=2,
    )
    result = await task.execute()
    assert result.rows[0]["ClientIP"] == "203.0.113.7"
    assert result.rows[1]["Workload"] == ""
    # One warning for the size limit, one for the broken record
    assert len(result.metadata["warnings"]) == 2
    kwargs = fake_exchange.search_unified_audit_log.await_args.kwargs
    assert kwargs["operations"] == ["MailItemsAccessed"]
    assert kwargs["user_ids"] is None
