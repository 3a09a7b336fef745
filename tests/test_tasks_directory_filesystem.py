"""
Tests for Active Directory and filesystem tasks.
"""
import os
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from m365_admin_toolkit.filesystem.acl import AclEntry
from m365_admin_toolkit.tasks import (
    AdUsersTask,
    CleanupFilesTask,
    DisableStaleUsersTask,
    FolderAclTask,
    FolderPermissionTask,
)
from m365_admin_toolkit.tasks.base import STATUS_ERROR, STATUS_PLANNED, STATUS_SKIPPED, STATUS_SUCCESS
from tests.conftest import NOW

AD_USERS = [
    {"SamAccountName": "jdoe", "UserPrincipalName": "jdoe@corp.com", "Enabled": True,
     "LastLogonDate": "2023-12-01T00:00:00.0000000Z", "DistinguishedName": "CN=jdoe,OU=Staff,DC=corp,DC=com"},
    {"SamAccountName": "asmith", "UserPrincipalName": "asmith@corp.com", "Enabled": True,
     "LastLogonDate": "2024-05-28T00:00:00.0000000Z", "DistinguishedName": "CN=asmith,OU=Staff,DC=corp,DC=com"},
    {"SamAccountName": "svc-backup", "UserPrincipalName": "svc-backup@corp.com", "Enabled": True,
     "LastLogonDate": None, "DistinguishedName": "CN=svc-backup,OU=Staff,DC=corp,DC=com"},
    {"SamAccountName": "old", "UserPrincipalName": "old@corp.com", "Enabled": False,
     "LastLogonDate": "2020-01-01T00:00:00Z", "DistinguishedName": "CN=old,OU=Disabled,DC=corp,DC=com"},
]


class TestAdUsers:

    @pytest.mark.asyncio
    async def test_enabled_stale_users(self, make_context, fake_directory):
        fake_directory.get_users.return_value = AD_USERS
        task = AdUsersTask(make_context(directory=fake_directory), enabled_only=True, stale_days=90, now=NOW)
        result = await task.execute()
        assert [r["SamAccountName"] for r in result.rows] == ["jdoe", "svc-backup"]
        assert result.metadata["items_enumerated"] == 4


class TestDisableStaleUsers:

    @pytest.mark.asyncio
    async def test_dry_run_plans_disable_and_move(self, make_context, fake_directory):
        fake_directory.get_users.return_value = AD_USERS
        fake_directory.disable_account.return_value = False
        fake_directory.move_object.return_value = False
        task = DisableStaleUsersTask(
            make_context(directory=fake_directory),
            search_base="OU=Staff,DC=corp,DC=com",
            move_to="OU=Disabled,DC=corp,DC=com",
            exclude=["svc-backup"],
            now=NOW,
        )
        result = await task.execute()

        # Default of 90 stale days comes from the task configuration
        assert [(r["SamAccountName"], r["Status"], r["MovedTo"]) for r in result.rows] == [
            ("jdoe", STATUS_PLANNED, "OU=Disabled,DC=corp,DC=com"),
        ]
        fake_directory.move_object.assert_awaited_once_with(
            "CN=jdoe,OU=Staff,DC=corp,DC=com", "OU=Disabled,DC=corp,DC=com"
        )

    @pytest.mark.asyncio
    async def test_failure_on_one_account_continues(self, make_context, fake_directory, apply_guard):
        fake_directory.get_users.return_value = AD_USERS
        fake_directory.disable_account.side_effect = [PermissionError("Access is denied"), True]
        task = DisableStaleUsersTask(
            make_context(guard=apply_guard, directory=fake_directory),
            search_base="OU=Staff,DC=corp,DC=com", stale_days=30, now=NOW,
        )
        result = await task.execute()
        assert [(r["SamAccountName"], r["Status"]) for r in result.rows] == [
            ("jdoe", STATUS_ERROR),
            ("svc-backup", STATUS_SUCCESS),
        ]

    @pytest.mark.asyncio
    async def test_search_base_required(self, make_context, fake_directory):
        result = await DisableStaleUsersTask(make_context(directory=fake_directory)).execute()
        assert result.failed
        fake_directory.get_users.assert_not_awaited()


def fake_acl(entries_by_path):
    acl = MagicMock()
    acl.get_acl = AsyncMock(side_effect=lambda path: entries_by_path.get(str(path), []))
    acl.add_access_rule = AsyncMock(return_value=False)
    acl.remove_access_rules = AsyncMock(return_value=False)
    acl.take_ownership = AsyncMock(return_value=False)
    acl.disable_inheritance = AsyncMock(return_value=False)
    return acl


def entry(path, identity, rights="Modify", inherited=False, access_type="Allow"):
    return AclEntry(path=path, identity=identity, rights=rights, access_type=access_type, is_inherited=inherited)


class TestFolderAcl:

    @pytest.mark.asyncio
    async def test_depth_and_explicit_only(self, make_context, tmp_path):
        (tmp_path / "a" / "deep").mkdir(parents=True)
        (tmp_path / "b").mkdir()
        acl = fake_acl({
            str(tmp_path): [entry(str(tmp_path), "CORP\\Domain Users", inherited=True)],
            str(tmp_path / "a"): [entry(str(tmp_path / "a"), "CORP\\Finance")],
            str(tmp_path / "a" / "deep"): [entry(str(tmp_path / "a" / "deep"), "CORP\\Secret")],
        })
        task = FolderAclTask(make_context(acl=acl), path=[str(tmp_path)], depth=1, explicit_only=True)
        result = await task.execute()
        assert result.metadata["items_enumerated"] == 3
        assert [r["Identity"] for r in result.rows] == ["CORP\\Finance"]


class TestFolderPermission:

    @pytest.mark.asyncio
    async def test_grant_skips_existing_entry(self, make_context):
        acl = fake_acl({"D:\\Finance": [entry("D:\\Finance", "CORP\\jdoe", rights="Modify, Synchronize")]})
        task = FolderPermissionTask(
            make_context(acl=acl), path=["D:\\Finance", "D:\\HR"], user="CORP\\jdoe", rights="Modify",
        )
        result = await task.execute()
        assert [r["Status"] for r in result.rows] == [STATUS_SKIPPED, STATUS_PLANNED]
        acl.add_access_rule.assert_awaited_once_with("D:\\HR", "CORP\\jdoe", "Modify", access_type="Allow")

    @pytest.mark.asyncio
    async def test_revoke_ignores_inherited_entries(self, make_context):
        acl = fake_acl({"D:\\HR": [entry("D:\\HR", "CORP\\jdoe", inherited=True)]})
        task = FolderPermissionTask(make_context(acl=acl), path=["D:\\HR"], user="CORP\\jdoe", action="revoke")
        result = await task.execute()
        assert result.rows[0]["Status"] == STATUS_SKIPPED
        acl.remove_access_rules.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_grant_over_deny_entry_adds_allow_rule(self, make_context, apply_guard):
        acl = fake_acl({"D:\\Finance": [
            entry("D:\\Finance", "CORP\\jdoe", rights="Modify, Synchronize", access_type="Deny"),
        ]})
        acl.add_access_rule.return_value = True
        task = FolderPermissionTask(
            make_context(guard=apply_guard, acl=acl), path=["D:\\Finance"], user="CORP\\jdoe", rights="Modify",
        )
        result = await task.execute()
        assert result.rows[0]["Status"] == STATUS_SUCCESS
        assert result.rows[0]["AccessType"] == "Allow"
        acl.add_access_rule.assert_awaited_once_with("D:\\Finance", "CORP\\jdoe", "Modify", access_type="Allow")

    @pytest.mark.asyncio
    async def test_deny_skips_existing_deny_only(self, make_context):
        acl = fake_acl({
            "D:\\Finance": [entry("D:\\Finance", "CORP\\jdoe", access_type="Deny")],
            "D:\\HR": [entry("D:\\HR", "CORP\\jdoe")],
        })
        task = FolderPermissionTask(
            make_context(acl=acl), path=["D:\\Finance", "D:\\HR"], user="CORP\\jdoe", deny=True,
        )
        result = await task.execute()
        assert [(r["Status"], r["AccessType"]) for r in result.rows] == [
            (STATUS_SKIPPED, "Deny"), (STATUS_PLANNED, "Deny"),
        ]
        acl.add_access_rule.assert_awaited_once_with("D:\\HR", "CORP\\jdoe", "Modify", access_type="Deny")

    @pytest.mark.asyncio
    async def test_revoke_removes_explicit_entries(self, make_context, apply_guard):
        acl = fake_acl({
            "D:\\Finance": [entry("D:\\Finance", "corp\\JDoe", access_type="Deny")],
            "D:\\HR": [entry("D:\\HR", "CORP\\other")],
        })
        acl.remove_access_rules.return_value = True
        task = FolderPermissionTask(
            make_context(guard=apply_guard, acl=acl),
            path=["D:\\Finance", "D:\\HR"], user="CORP\\jdoe", action="revoke",
        )
        result = await task.execute()
        assert [r["Status"] for r in result.rows] == [STATUS_SUCCESS, STATUS_SKIPPED]
        acl.remove_access_rules.assert_awaited_once_with("D:\\Finance", "CORP\\jdoe")

    @pytest.mark.asyncio
    async def test_paths_file_and_failure_continues(self, make_context, tmp_path):
        paths_file = tmp_path / "paths.txt"
        paths_file.write_text("D:\\Broken\nD:\\HR\n# comment\nd:\\hr\n", encoding="utf-8")

        async def get_acl(path):
            if path == "D:\\Broken":
                raise RuntimeError("Access is denied")
            return []

        acl = fake_acl({})
        acl.get_acl.side_effect = get_acl
        task = FolderPermissionTask(
            make_context(acl=acl), path=["D:\\Finance"], paths_file=str(paths_file), user="CORP\\jdoe",
        )
        result = await task.execute()
        assert [(r["Path"], r["Status"]) for r in result.rows] == [
            ("D:\\Finance", STATUS_PLANNED), ("D:\\Broken", STATUS_ERROR), ("D:\\HR", STATUS_PLANNED),
        ]
        assert "Access is denied" in result.rows[1]["Detail"]

    def test_identity_is_not_an_option(self, make_context):
        with pytest.raises(TypeError):
            FolderPermissionTask(make_context(), identity=["D:\\Finance"])

    @pytest.mark.asyncio
    async def test_disable_inheritance(self, make_context):
        acl = fake_acl({
            "D:\\Finance": [entry("D:\\Finance", "CORP\\Domain Users", inherited=True)],
            "D:\\Protected": [entry("D:\\Protected", "CORP\\Finance")],
        })
        task = FolderPermissionTask(
            make_context(acl=acl), path=["D:\\Finance", "D:\\Protected"],
            action="disable-inheritance", keep_inherited=False,
        )
        result = await task.execute()
        assert [r["Status"] for r in result.rows] == [STATUS_PLANNED, STATUS_SKIPPED]
        assert result.rows[0]["Rights"] == "Remove inherited"
        acl.disable_inheritance.assert_awaited_once_with("D:\\Finance", keep_inherited=False)

    @pytest.mark.asyncio
    async def test_take_ownership(self, make_context):
        acl = fake_acl({})
        task = FolderPermissionTask(make_context(acl=acl), path=["D:\\Orphan"], action="take-ownership")
        result = await task.execute()
        assert result.rows[0]["Identity"] == "BUILTIN\\Administrators"
        acl.take_ownership.assert_awaited_once_with("D:\\Orphan", "BUILTIN\\Administrators")


class TestCleanupFiles:

    def _make_file(self, path, age_days):
        path.write_text("x", encoding="utf-8")
        ts = (NOW - timedelta(days=age_days)).timestamp()
        os.utime(path, (ts, ts))
        return path

    @pytest.mark.asyncio
    async def test_dry_run_keeps_files(self, make_context, tmp_path):
        old = self._make_file(tmp_path / "old.log", 40)
        self._make_file(tmp_path / "new.log", 2)
        result = await CleanupFilesTask(make_context(), path=[str(tmp_path)], older_than_days=30, now=NOW).execute()
        assert [r["Path"] for r in result.rows] == [str(old)]
        assert result.rows[0]["Status"] == STATUS_PLANNED
        assert old.exists()

    @pytest.mark.asyncio
    async def test_apply_deletes_matching_files(self, make_context, tmp_path, apply_guard):
        (tmp_path / "sub").mkdir()
        old_log = self._make_file(tmp_path / "sub" / "old.log", 40)
        old_txt = self._make_file(tmp_path / "old.txt", 40)
        task = CleanupFilesTask(
            make_context(guard=apply_guard), path=[str(tmp_path)], older_than_days=30, pattern="*.log", now=NOW,
        )
        result = await task.execute()
        assert result.status_counts[STATUS_SUCCESS] == 1
        assert not old_log.exists()
        assert old_txt.exists()

    @pytest.mark.asyncio
    async def test_rejects_bad_arguments(self, make_context, tmp_path):
        assert (await CleanupFilesTask(make_context(), path=[str(tmp_path)], older_than_days=0).execute()).failed
        missing = tmp_path / "missing"
        assert (await CleanupFilesTask(make_context(), path=[str(missing)], older_than_days=5).execute()).failed
