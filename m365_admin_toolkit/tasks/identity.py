"""
Identity tasks
Guest user report, group membership export, and group membership changes
(Entra ID through Graph, or on-premises AD).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from ..filters import (
    filter_stream,
    match_all,
    older_than,
    parse_datetime,
    suffix_match,
    all_of,
)
from ..graph import entra
from .base import BaseTask, TaskResult, STATUS_SKIPPED

logger = logging.getLogger("m365_admin_toolkit.tasks.identity")

GUEST_SELECT = (
    "id,displayName,mail,userPrincipalName,createdDateTime,"
    "externalUserState,accountEnabled,signInActivity"
)


class GuestUsersTask(BaseTask):
    name = "guest-users"
    description = "Report external guest accounts, optionally by domain or stale sign-in"
    services = ("graph",)
    columns = [
        "DisplayName", "Mail", "UserPrincipalName", "CreatedDateTime",
        "ExternalUserState", "AccountEnabled", "LastSignIn", "DaysSinceSignIn",
    ]
    defaults = {"domain": None, "stale_days": None, "now": None}

    async def run(self, result: TaskResult):
        now = self.opt("now") or datetime.now(timezone.utc)
        predicates = []
        if self.opt("domain"):
            domains = [d if d.startswith("@") else f"@{d}" for d in self.opt("domain")]
            predicates.append(suffix_match("mail", domains))
        if self.opt("stale_days") is not None:
            predicates.append(older_than(
                "signInActivity.lastSignInDateTime",
                self.opt("stale_days"),
                now=now,
                include_missing=True,
            ))
        predicate = all_of(*predicates) if predicates else match_all

        # signInActivity requires beta
        stream = self.graph.get_all_pages_stream(
            "users",
            params={"$filter": "userType eq 'Guest'", "$select": GUEST_SELECT},
            beta=True,
        )

        async def counted():
            async for user in stream:
                result.metadata["items_enumerated"] += 1
                yield user

        async for user in filter_stream(counted(), predicate):
            result.metadata["items_matched"] += 1
            last = parse_datetime((user.get("signInActivity") or {}).get("lastSignInDateTime"))
            result.add_row({
                "DisplayName": user.get("displayName"),
                "Mail": user.get("mail"),
                "UserPrincipalName": user.get("userPrincipalName"),
                "CreatedDateTime": user.get("createdDateTime"),
                "ExternalUserState": user.get("externalUserState"),
                "AccountEnabled": user.get("accountEnabled"),
                "LastSignIn": last.isoformat() if last else "",
                "DaysSinceSignIn": (now - last).days if last else "",
            })


class GroupMembersTask(BaseTask):
    name = "group-members"
    description = "Export members of Entra ID or Active Directory groups"
    columns = ["Group", "MemberName", "MemberId", "UserPrincipalName", "Mail", "MemberType"]
    defaults = {"group": [], "source": "entra", "recursive": False}

    @property
    def services(self):
        return ("directory",) if self.opt("source") == "ad" else ("graph",)

    async def run(self, result: TaskResult):
        groups = self.opt("group")
        if not groups:
            raise ValueError("At least one --group is required")
        export = self._export_ad if self.opt("source") == "ad" else self._export_entra
        await self.for_each(groups, result, export)

    async def _export_entra(self, name: str, result: TaskResult):
        group = await entra.resolve_group(self.graph, name)
        if group is None:
            raise LookupError(f"Group '{name}' not found")
        members = await entra.get_group_members(self.graph, group["id"])
        result.metadata["items_enumerated"] += len(members)
        for m in members:
            result.add_row({
                "Group": group.get("displayName"),
                "MemberName": m.get("displayName"),
                "MemberId": m.get("id"),
                "UserPrincipalName": m.get("userPrincipalName"),
                "Mail": m.get("mail"),
                "MemberType": entra.object_type(m),
            })

    async def _export_ad(self, name: str, result: TaskResult):
        members = await self.directory.get_group_members(name, recursive=self.opt("recursive"))
        result.metadata["items_enumerated"] += len(members)
        for m in members:
            result.add_row({
                "Group": name,
                "MemberName": m.get("Name"),
                "MemberId": m.get("SamAccountName"),
                "UserPrincipalName": "",
                "Mail": "",
                "MemberType": m.get("objectClass"),
            })


class GroupMembershipTask(BaseTask):
    name = "group-membership"
    description = "Add or remove members of an Entra ID or Active Directory group"
    mutating = True
    columns = ["Group", "Member", "Action"]
    defaults = {
        "group": None,
        "source": "entra",
        "action": "add",
        "identity": [],
        "identities_file": None,
        "search_base": None,
        "domain": None,
    }

    @property
    def services(self):
        return ("directory",) if self.opt("source") == "ad" else ("graph",)

    def error_fields(self, item) -> dict:
        return {"Group": self.opt("group"), "Member": item, "Action": self.opt("action")}

    async def run(self, result: TaskResult):
        if not self.opt("group"):
            raise ValueError("--group is required")
        if self.opt("action") not in ("add", "remove"):
            raise ValueError(f"Unknown action: {self.opt('action')}")
        if self.opt("source") == "ad":
            await self._run_ad(result)
        else:
            await self._run_entra(result)

    # ── Entra ID ────────────────────────────────────────────────────────────

    async def _run_entra(self, result: TaskResult):
        identities = self.targets()
        if not identities:
            raise ValueError("No members given; use --identity or --identities-file")
        group = await entra.resolve_group(self.graph, self.opt("group"))
        if group is None:
            raise LookupError(f"Group '{self.opt('group')}' not found")

        members = await entra.get_group_members(self.graph, group["id"])
        member_ids = {m.get("id") for m in members}
        result.metadata["items_enumerated"] = len(identities)
        action = self.opt("action")
        group_name = group.get("displayName") or self.opt("group")

        async def apply(identity: str, res: TaskResult):
            row = {"Group": group_name, "Member": identity, "Action": action}
            user = await entra.resolve_user(self.graph, identity)
            if user is None:
                raise LookupError("User not found")
            is_member = user["id"] in member_ids
            if action == "add" and is_member:
                res.add_outcome(identity, STATUS_SKIPPED, "Already a member", **row)
                return
            if action == "remove" and not is_member:
                res.add_outcome(identity, STATUS_SKIPPED, "Not a member", **row)
                return
            if action == "add":
                executed = await entra.add_group_member(self.graph, group["id"], user["id"])
            else:
                executed = await entra.remove_group_member(self.graph, group["id"], user["id"])
            res.add_outcome(identity, self.applied_status(executed), "", **row)

        await self.for_each(identities, result, apply)

    # ── Active Directory ────────────────────────────────────────────────────

    async def _run_ad(self, result: TaskResult):
        identities = self.targets()
        if self.opt("search_base"):
            users = await self.directory.get_users(search_base=self.opt("search_base"))
            if self.opt("domain"):
                domains = [d if d.startswith("@") else f"@{d}" for d in self.opt("domain")]
                users = [u for u in users if suffix_match("UserPrincipalName", domains)(u)]
            identities.extend(u["SamAccountName"] for u in users if u.get("SamAccountName"))
        if not identities:
            raise ValueError("No members given; use --identity, --identities-file or --search-base")

        group = self.opt("group")
        members = await self.directory.get_group_members(group)
        current = set()
        for m in members:
            for key in ("SamAccountName", "DistinguishedName", "Name"):
                if m.get(key):
                    current.add(m[key].lower())
        result.metadata["items_enumerated"] = len(identities)
        action = self.opt("action")

        async def apply(identity: str, res: TaskResult):
            row = {"Group": group, "Member": identity, "Action": action}
            is_member = identity.lower() in current
            if action == "add" and is_member:
                res.add_outcome(identity, STATUS_SKIPPED, "Already a member", **row)
                return
            if action == "remove" and not is_member:
                res.add_outcome(identity, STATUS_SKIPPED, "Not a member", **row)
                return
            if action == "add":
                executed = await self.directory.add_group_member(group, identity)
            else:
                executed = await self.directory.remove_group_member(group, identity)
            res.add_outcome(identity, self.applied_status(executed), "", **row)

        await self.for_each(identities, result, apply)
