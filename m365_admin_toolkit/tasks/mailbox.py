"""
Mailbox tasks
Permission audit, folder statistics, automatic replies, unified audit log,
and mailbox changes (convert to shared, automatic replies, FullAccess).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

from ..exchange.client import Mailbox
from ..filters import parse_datetime, suffix_match
from .base import BaseTask, TaskResult, STATUS_SKIPPED

logger = logging.getLogger("m365_admin_toolkit.tasks.mailbox")

AUTO_REPLY_STATES = ("disabled", "alwaysEnabled", "scheduled")
AUDIENCES = ("none", "contactsOnly", "all")


def _domain_suffixes(domains) -> list[str]:
    return [d if d.startswith("@") else f"@{d}" for d in domains]


class MailboxSelectionMixin:
    """Pick mailboxes by explicit identity list, or enumerate by type/domain."""

    async def select_mailboxes(self, result: TaskResult) -> list[Mailbox]:
        identities = self.targets()
        if identities:
            mailboxes = []
            for identity in identities:
                try:
                    mailbox = await self.exchange.get_mailbox(identity)
                except Exception as e:
                    result.add_item_error(identity, f"{type(e).__name__}: {e}", **self.error_fields(identity))
                    continue
                if mailbox is None:
                    result.add_item_error(identity, "Mailbox not found", **self.error_fields(identity))
                    continue
                mailboxes.append(mailbox)
            result.metadata["items_enumerated"] = len(identities)
        else:
            mailboxes = await self.exchange.get_mailboxes(self.opt("recipient_type"))
            result.metadata["items_enumerated"] = len(mailboxes)

        if self.opt("domain"):
            by_domain = suffix_match("UserPrincipalName", _domain_suffixes(self.opt("domain")))
            mailboxes = [m for m in mailboxes if by_domain({"UserPrincipalName": m.user_principal_name})]
        return mailboxes


class MailboxPermissionsTask(MailboxSelectionMixin, BaseTask):
    name = "mailbox-permissions"
    description = "Audit FullAccess, SendAs and SendOnBehalf permissions on mailboxes"
    services = ("exchange",)
    columns = [
        "Mailbox", "UserPrincipalName", "RecipientTypeDetails",
        "PermissionType", "Grantee", "AccessRights",
    ]
    defaults = {
        "recipient_type": None,
        "domain": None,
        "identity": [],
        "identities_file": None,
    }

    async def run(self, result: TaskResult):
        mailboxes = await self.select_mailboxes(result)
        await self.for_each(mailboxes, result, self._audit, target_of=lambda m: m.user_principal_name)

    async def _audit(self, mailbox: Mailbox, result: TaskResult):
        base = {
            "Mailbox": mailbox.display_name,
            "UserPrincipalName": mailbox.user_principal_name,
            "RecipientTypeDetails": mailbox.recipient_type_details,
        }
        full_access = await self.exchange.get_mailbox_permissions(mailbox.user_principal_name)
        send_as = await self.exchange.get_recipient_permissions(mailbox.user_principal_name)

        for p in full_access:
            result.add_row({**base, "PermissionType": "FullAccess",
                            "Grantee": p.get("User"), "AccessRights": p.get("AccessRights")})
        for p in send_as:
            result.add_row({**base, "PermissionType": "SendAs",
                            "Grantee": p.get("Trustee"), "AccessRights": p.get("AccessRights")})
        for grantee in mailbox.grant_send_on_behalf_to:
            result.add_row({**base, "PermissionType": "SendOnBehalf",
                            "Grantee": grantee, "AccessRights": "SendOnBehalf"})


class MailboxFoldersTask(MailboxSelectionMixin, BaseTask):
    name = "mailbox-folders"
    description = "Report folder item counts and sizes per mailbox"
    services = ("exchange",)
    columns = [
        "Mailbox", "FolderPath", "FolderType", "ItemsInFolder",
        "ItemsInFolderAndSubfolders", "FolderSize",
    ]
    defaults = {
        "recipient_type": None,
        "domain": None,
        "identity": [],
        "identities_file": None,
        "min_items": 0,
    }

    async def run(self, result: TaskResult):
        mailboxes = await self.select_mailboxes(result)
        await self.for_each(mailboxes, result, self._folders, target_of=lambda m: m.user_principal_name)

    async def _folders(self, mailbox: Mailbox, result: TaskResult):
        for folder in await self.exchange.get_folder_statistics(mailbox.user_principal_name):
            items = folder.get("ItemsInFolder") or 0
            if items < self.opt("min_items"):
                continue
            result.add_row({
                "Mailbox": mailbox.user_principal_name,
                "FolderPath": folder.get("FolderPath"),
                "FolderType": folder.get("FolderType"),
                "ItemsInFolder": items,
                "ItemsInFolderAndSubfolders": folder.get("ItemsInFolderAndSubfolders"),
                "FolderSize": folder.get("FolderSize"),
            })


def _schedule_value(setting: dict, key: str) -> str:
    value = setting.get(key) or {}
    return value.get("dateTime", "") if isinstance(value, dict) else str(value)


class AutoRepliesTask(BaseTask):
    name = "auto-replies"
    description = "Report automatic reply (out of office) settings"
    services = ("graph",)
    columns = [
        "UserPrincipalName", "ReplyStatus", "ExternalAudience",
        "ScheduledStart", "ScheduledEnd", "InternalReplyMessage", "ExternalReplyMessage",
    ]
    defaults = {
        "identity": [],
        "identities_file": None,
        "domain": None,
        "enabled_only": False,
    }

    async def run(self, result: TaskResult):
        identities = self.targets()
        if not identities:
            users = await self.graph.get_all_pages(
                "users",
                params={
                    "$filter": "accountEnabled eq true and userType eq 'Member'",
                    "$select": "id,userPrincipalName,mail",
                },
            )
            identities = [u["userPrincipalName"] for u in users if u.get("mail")]
        if self.opt("domain"):
            identities = [i for i in identities if i.lower().endswith(tuple(_domain_suffixes(self.opt("domain"))))]
        result.metadata["items_enumerated"] = len(identities)
        await self.for_each(identities, result, self._read)

    async def _read(self, upn: str, result: TaskResult):
        data = await self.graph.get(f"users/{quote(upn, safe='@')}/mailboxSettings/automaticRepliesSetting")
        if data.get("_not_found") or data.get("_forbidden"):
            result.add_warning(f"{upn}: no mailbox settings ({data.get('_error_message', 'not found')})")
            return
        status = data.get("status", "")
        if self.opt("enabled_only") and status == "disabled":
            return
        result.add_row({
            "UserPrincipalName": upn,
            "ReplyStatus": status,
            "ExternalAudience": data.get("externalAudience", ""),
            "ScheduledStart": _schedule_value(data, "scheduledStartDateTime"),
            "ScheduledEnd": _schedule_value(data, "scheduledEndDateTime"),
            "InternalReplyMessage": data.get("internalReplyMessage", ""),
            "ExternalReplyMessage": data.get("externalReplyMessage", ""),
        })


def _graph_date_time(dt: datetime, time_zone: str) -> dict:
    """Graph dateTimeTimeZone value. Times with an offset are sent as UTC."""
    if dt.tzinfo is not None:
        dt, time_zone = dt.astimezone(timezone.utc), "UTC"
    return {"dateTime": dt.strftime("%Y-%m-%dT%H:%M:%S"), "timeZone": time_zone}


class SetAutoReplyTask(BaseTask):
    name = "set-auto-reply"
    description = "Enable or disable automatic replies for users"
    services = ("graph",)
    mutating = True
    columns = ["UserPrincipalName", "PreviousStatus", "NewStatus"]
    defaults = {
        "identity": [],
        "identities_file": None,
        "action": "enable",
        "internal_message": "",
        "external_message": None,
        "external_audience": "all",
        "start": None,
        "end": None,
        "time_zone": "UTC",
    }

    def error_fields(self, item) -> dict:
        return {"UserPrincipalName": item}

    def _desired_setting(self) -> dict:
        if self.opt("action") == "disable":
            return {"status": "disabled"}
        if not self.opt("internal_message"):
            raise ValueError("--internal-message is required to enable automatic replies")
        if self.opt("external_audience") not in AUDIENCES:
            raise ValueError(f"external audience must be one of {AUDIENCES}")
        external = self.opt("external_message")
        setting = {
            "status": "alwaysEnabled",
            "externalAudience": self.opt("external_audience"),
            "internalReplyMessage": self.opt("internal_message"),
            "externalReplyMessage": self.opt("internal_message") if external is None else external,
        }
        start, end = self.opt("start"), self.opt("end")
        if start or end:
            if not (start and end):
                raise ValueError("A schedule needs both --start and --end")
            start_dt = parse_datetime(start, assume_utc=False)
            end_dt = parse_datetime(end, assume_utc=False)
            if start_dt is None or end_dt is None:
                raise ValueError("Schedule --start and --end must be ISO dates")
            if (start_dt.tzinfo is None) != (end_dt.tzinfo is None):
                raise ValueError("Give a UTC offset on both --start and --end, or on neither")
            if end_dt <= start_dt:
                raise ValueError("Schedule --end must be a date after --start")
            setting["status"] = "scheduled"
            setting["scheduledStartDateTime"] = _graph_date_time(start_dt, self.opt("time_zone"))
            setting["scheduledEndDateTime"] = _graph_date_time(end_dt, self.opt("time_zone"))
        return setting

    async def run(self, result: TaskResult):
        if self.opt("action") not in ("enable", "disable"):
            raise ValueError(f"Unknown action: {self.opt('action')}")
        desired = self._desired_setting()
        identities = self.targets()
        if not identities:
            raise ValueError("No users given; use --identity or --identities-file")
        result.metadata["items_enumerated"] = len(identities)

        async def apply(upn: str, res: TaskResult):
            endpoint = f"users/{quote(upn, safe='@')}/mailboxSettings"
            current = await self.graph.get(f"{endpoint}/automaticRepliesSetting")
            if current.get("_not_found"):
                raise LookupError("Mailbox not found")
            previous = current.get("status", "")
            row = {"UserPrincipalName": upn, "PreviousStatus": previous, "NewStatus": desired["status"]}
            if desired["status"] == "disabled" and previous == "disabled":
                res.add_outcome(upn, STATUS_SKIPPED, "Already disabled", **row)
                return
            data = await self.graph.patch(endpoint, {"automaticRepliesSetting": desired})
            res.add_outcome(upn, self.applied_status(not data.get("_planned")), "", **row)

        await self.for_each(identities, result, apply)


class AuditLogTask(BaseTask):
    name = "audit-log"
    description = "Search the unified audit log over a date range"
    services = ("exchange",)
    columns = [
        "CreationDate", "UserIds", "Operations", "RecordType",
        "Workload", "ObjectId", "ClientIP",
    ]
    defaults = {
        "start": None,
        "end": None,
        "days": 7,
        "operations": None,
        "identity": [],
        "identities_file": None,
        "result_size": 5000,
    }

    async def run(self, result: TaskResult):
        end = parse_datetime(self.opt("end")) or datetime.now(timezone.utc)
        start = parse_datetime(self.opt("start")) or end - timedelta(days=self.opt("days"))
        if start >= end:
            raise ValueError("Audit log --start must be before --end")

        records = await self.exchange.search_unified_audit_log(
            start,
            end,
            operations=self.opt("operations"),
            user_ids=self.targets() or None,
            result_size=self.opt("result_size"),
        )
        result.metadata["items_enumerated"] = len(records)
        if len(records) >= self.opt("result_size"):
            result.add_warning(
                f"Result size limit ({self.opt('result_size')}) reached; narrow the date range"
            )

        for record in records:
            result.metadata["items_matched"] += 1
            try:
                audit = json.loads(record.get("AuditData") or "{}")
            except (TypeError, ValueError):
                result.add_warning(f"Unparseable AuditData for record at {record.get('CreationDate')}")
                audit = {}
            result.add_row({
                "CreationDate": record.get("CreationDate"),
                "UserIds": record.get("UserIds"),
                "Operations": record.get("Operations"),
                "RecordType": record.get("RecordType"),
                "Workload": audit.get("Workload", ""),
                "ObjectId": audit.get("ObjectId", ""),
                "ClientIP": audit.get("ClientIP", ""),
            })


class ConvertSharedTask(MailboxSelectionMixin, BaseTask):
    name = "convert-shared"
    description = "Convert user mailboxes to shared mailboxes"
    services = ("exchange",)
    mutating = True
    columns = ["Mailbox", "UserPrincipalName", "PreviousType"]
    defaults = {
        "identity": [],
        "identities_file": None,
        "domain": None,
        "recipient_type": "UserMailbox",
        "disabled_only": False,
    }

    def error_fields(self, item) -> dict:
        upn = item.user_principal_name if isinstance(item, Mailbox) else item
        return {"UserPrincipalName": upn}

    async def run(self, result: TaskResult):
        if not self.targets() and not self.opt("domain"):
            raise ValueError("Refusing to convert every mailbox; give identities or --domain")
        mailboxes = await self.select_mailboxes(result)
        if self.opt("disabled_only"):
            mailboxes = [m for m in mailboxes if m.account_disabled]
        await self.for_each(mailboxes, result, self._convert, target_of=lambda m: m.user_principal_name)

    async def _convert(self, mailbox: Mailbox, result: TaskResult):
        row = {
            "Mailbox": mailbox.display_name,
            "UserPrincipalName": mailbox.user_principal_name,
            "PreviousType": mailbox.recipient_type_details,
        }
        if mailbox.is_shared:
            result.add_outcome(mailbox.user_principal_name, STATUS_SKIPPED, "Already shared", **row)
            return
        if mailbox.recipient_type_details != "UserMailbox":
            result.add_outcome(
                mailbox.user_principal_name, STATUS_SKIPPED,
                f"Not a user mailbox ({mailbox.recipient_type_details})", **row,
            )
            return
        executed = await self.exchange.set_mailbox_type(mailbox.user_principal_name, "Shared")
        result.add_outcome(mailbox.user_principal_name, self.applied_status(executed), "", **row)


class MailboxAccessTask(BaseTask):
    name = "mailbox-access"
    description = "Grant or revoke FullAccess on mailboxes"
    services = ("exchange",)
    mutating = True
    columns = ["Mailbox", "Grantee", "Action"]
    defaults = {
        "identity": [],
        "identities_file": None,
        "user": None,
        "action": "grant",
        "automapping": True,
    }

    def error_fields(self, item) -> dict:
        return {"Mailbox": item, "Grantee": self.opt("user"), "Action": self.opt("action")}

    async def run(self, result: TaskResult):
        user = self.opt("user")
        if not user:
            raise ValueError("--user (the grantee) is required")
        if self.opt("action") not in ("grant", "revoke"):
            raise ValueError(f"Unknown action: {self.opt('action')}")
        mailboxes = self.targets()
        if not mailboxes:
            raise ValueError("No mailboxes given; use --identity or --identities-file")
        result.metadata["items_enumerated"] = len(mailboxes)
        await self.for_each(mailboxes, result, self._apply)

    async def _apply(self, mailbox: str, result: TaskResult):
        user = self.opt("user")
        action = self.opt("action")
        row = {"Mailbox": mailbox, "Grantee": user, "Action": action}
        current = await self.exchange.get_mailbox_permissions(mailbox)
        has_access = any(
            (p.get("User") or "").lower() == user.lower()
            and "FullAccess" in (p.get("AccessRights") or "")
            for p in current
        )
        if action == "grant" and has_access:
            result.add_outcome(mailbox, STATUS_SKIPPED, "Already has FullAccess", **row)
            return
        if action == "revoke" and not has_access:
            result.add_outcome(mailbox, STATUS_SKIPPED, "No FullAccess to revoke", **row)
            return
        if action == "grant":
            executed = await self.exchange.add_mailbox_permission(
                mailbox, user, automapping=self.opt("automapping")
            )
        else:
            executed = await self.exchange.remove_mailbox_permission(mailbox, user)
        result.add_outcome(mailbox, self.applied_status(executed), "", **row)
