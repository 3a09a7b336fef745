"""
Active Directory tasks
User export by OU and stale account clean-up.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from ..directory.ad_client import USER_PROPERTIES
from ..filters import all_of, filter_items, flag, match_all, older_than, suffix_match
from .base import BaseTask, TaskResult

logger = logging.getLogger("m365_admin_toolkit.tasks.directory")


def _user_predicate(options: dict, stale_days, now):
    predicates = []
    if options.get("enabled_only"):
        predicates.append(flag("Enabled", True))
    if options.get("disabled_only"):
        predicates.append(flag("Enabled", False))
    if options.get("domain"):
        domains = [d if d.startswith("@") else f"@{d}" for d in options["domain"]]
        predicates.append(suffix_match("UserPrincipalName", domains))
    if stale_days is not None:
        # Never logged on counts as stale
        predicates.append(older_than("LastLogonDate", stale_days, now=now, include_missing=True))
    return all_of(*predicates) if predicates else match_all


class AdUsersTask(BaseTask):
    name = "ad-users"
    description = "Export Active Directory users from an OU"
    services = ("directory",)
    columns = list(USER_PROPERTIES)
    defaults = {
        "search_base": None,
        "enabled_only": False,
        "disabled_only": False,
        "domain": None,
        "stale_days": None,
        "now": None,
    }

    async def run(self, result: TaskResult):
        now = self.opt("now") or datetime.now(timezone.utc)
        users = await self.directory.get_users(search_base=self.opt("search_base"))
        result.metadata["items_enumerated"] = len(users)
        for user in filter_items(users, _user_predicate(self.options, self.opt("stale_days"), now)):
            result.metadata["items_matched"] += 1
            result.add_row({c: user.get(c) for c in self.columns})


class DisableStaleUsersTask(BaseTask):
    name = "disable-stale-users"
    description = "Disable AD accounts with no logon in N days, optionally moving them to an OU"
    services = ("directory",)
    mutating = True
    columns = ["SamAccountName", "UserPrincipalName", "LastLogonDate", "DistinguishedName", "MovedTo"]
    defaults = {
        "search_base": None,
        "stale_days": None,
        "move_to": None,
        "domain": None,
        "exclude": [],
        "now": None,
    }

    def error_fields(self, item) -> dict:
        return {c: item.get(c) for c in self.columns if c != "MovedTo"}

    async def run(self, result: TaskResult):
        if not self.opt("search_base"):
            raise ValueError("--search-base is required; refusing to scan the whole domain")
        stale_days = self.opt("stale_days")
        if stale_days is None:
            stale_days = self.context.config.stale_days
        now = self.opt("now") or datetime.now(timezone.utc)

        users = await self.directory.get_users(search_base=self.opt("search_base"))
        result.metadata["items_enumerated"] = len(users)
        excluded = {e.lower() for e in self.opt("exclude") or []}
        options = {**self.options, "enabled_only": True}
        stale = [
            u for u in filter_items(users, _user_predicate(options, stale_days, now))
            if (u.get("SamAccountName") or "").lower() not in excluded
        ]
        await self.for_each(stale, result, self._disable, target_of=lambda u: u.get("SamAccountName", ""))

    async def _disable(self, user: dict, result: TaskResult):
        sam = user.get("SamAccountName", "")
        row = {c: user.get(c) for c in self.columns if c != "MovedTo"}
        row["MovedTo"] = ""
        executed = await self.directory.disable_account(sam)
        move_to = self.opt("move_to")
        if move_to:
            if (user.get("DistinguishedName") or "").lower().endswith("," + move_to.lower()):
                result.add_outcome(sam, self.applied_status(executed), "Disabled; already in target OU", **row)
                return
            await self.directory.move_object(user["DistinguishedName"], move_to)
            row["MovedTo"] = move_to
        result.add_outcome(sam, self.applied_status(executed), "", **row)
