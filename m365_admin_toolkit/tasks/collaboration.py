"""
Collaboration tasks
SharePoint site ownership and Teams channel membership.
"""

from __future__ import annotations

import logging

from ..filters import contains, filter_items, match_all
from ..graph import entra
from ..graph.client import GraphAPIError
from .base import BaseTask, TaskResult

logger = logging.getLogger("m365_admin_toolkit.tasks.collaboration")

UNIFIED_GROUPS_FILTER = "groupTypes/any(c:c eq 'Unified')"
TEAMS_FILTER = "resourceProvisioningOptions/Any(x:x eq 'Team')"
SITE_FIELDS = "id,name,displayName,webUrl,isPersonalSite"


def _is_personal(site: dict) -> bool:
    return bool(site.get("isPersonalSite")) or "-my.sharepoint.com" in (site.get("webUrl") or "").lower()


def _url_key(url: str) -> str:
    return (url or "").rstrip("/").lower()


class SiteOwnersTask(BaseTask):
    """
    SharePoint sites and their owners.

    Owners of a group-connected site are the owners of its Microsoft 365
    group. Graph has no owner list for communication and classic sites, so
    their rows carry the site without owners.
    """

    name = "site-owners"
    description = "Report SharePoint sites with their owners"
    services = ("graph",)
    columns = ["SiteName", "SiteUrl", "SiteType", "GroupId", "GroupMail", "Visibility", "OwnerCount", "Owners"]
    defaults = {"url_contains": None, "ownerless_only": False, "include_personal": False}

    async def run(self, result: TaskResult):
        sites = await self._all_sites()
        if not self.opt("include_personal"):
            sites = [s for s in sites if not _is_personal(s)]
        if self.opt("url_contains"):
            sites = list(filter_items(sites, contains("webUrl", self.opt("url_contains"))))
        result.metadata["items_enumerated"] = len(sites)
        self._site_groups = await self._groups_by_site(result)
        await self.for_each(sites, result, self._site_row, target_of=lambda s: s.get("webUrl", ""))

    async def _all_sites(self) -> list[dict]:
        try:
            return await self.graph.get_all_pages("sites/getAllSites", params={"$select": SITE_FIELDS})
        except GraphAPIError as e:
            # getAllSites is app-only; delegated sessions use site search
            logger.info(f"sites/getAllSites unavailable ({e.status_code}), falling back to site search")
            return await self.graph.get_all_pages("sites", params={"search": "*", "$select": SITE_FIELDS})

    async def _groups_by_site(self, result: TaskResult) -> dict[str, dict]:
        """Map root site id and URL of every Microsoft 365 group to the group."""
        groups = await self.graph.get_all_pages(
            "groups",
            params={
                "$filter": UNIFIED_GROUPS_FILTER,
                "$select": "id,displayName,mail,visibility",
            },
        )
        by_site = {}
        for group in groups:
            try:
                site = await self.graph.get(f"groups/{group['id']}/sites/root", params={"$select": "id,webUrl"})
            except Exception as e:
                result.add_warning(f"{group.get('displayName')}: cannot read group site ({type(e).__name__}: {e})")
                continue
            if site.get("_not_found") or site.get("_forbidden"):
                logger.debug(f"{group.get('displayName')}: group has no SharePoint site")
                continue
            if site.get("id"):
                by_site[site["id"]] = group
            if site.get("webUrl"):
                by_site[_url_key(site["webUrl"])] = group
        return by_site

    async def _site_row(self, site: dict, result: TaskResult):
        url = site.get("webUrl", "")
        group = self._site_groups.get(site.get("id")) or self._site_groups.get(_url_key(url))
        row = {
            "SiteName": site.get("displayName") or site.get("name"),
            "SiteUrl": url,
            "SiteType": "Personal" if _is_personal(site) else "Site",
            "GroupId": "",
            "GroupMail": "",
            "Visibility": "",
            "OwnerCount": None,
            "Owners": [],
        }
        if group is None:
            # Owners unknown, so never reported as ownerless
            if not self.opt("ownerless_only"):
                result.add_row(row)
            return

        owners = await entra.get_group_owners(self.graph, group["id"])
        if self.opt("ownerless_only") and owners:
            return
        row.update({
            "SiteName": row["SiteName"] or group.get("displayName"),
            "SiteType": "Group-connected",
            "GroupId": group["id"],
            "GroupMail": group.get("mail"),
            "Visibility": group.get("visibility"),
            "OwnerCount": len(owners),
            "Owners": [o.get("userPrincipalName") or o.get("displayName") for o in owners],
        })
        result.add_row(row)


class TeamChannelsTask(BaseTask):
    name = "team-channels"
    description = "Report Teams channels and channel membership"
    services = ("graph",)
    columns = [
        "TeamName", "ChannelName", "MembershipType",
        "MemberName", "MemberEmail", "Roles",
    ]
    defaults = {"team": None, "guests_only": False}

    async def run(self, result: TaskResult):
        teams = await self.graph.get_all_pages(
            "groups",
            params={"$filter": TEAMS_FILTER, "$select": "id,displayName,visibility"},
        )
        result.metadata["items_enumerated"] = len(teams)
        predicate = contains("displayName", self.opt("team")) if self.opt("team") else match_all
        teams = list(filter_items(teams, predicate))
        await self.for_each(teams, result, self._team_rows, target_of=lambda t: t.get("displayName", ""))

    async def _team_rows(self, team: dict, result: TaskResult):
        channels = await self.graph.get_all_pages(
            f"teams/{team['id']}/channels",
            params={"$select": "id,displayName,membershipType"},
            skip_top=True,
        )
        for channel in channels:
            members = await self.graph.get_all_pages(
                f"teams/{team['id']}/channels/{channel['id']}/members",
                skip_top=True,
            )
            for member in members:
                roles = member.get("roles") or []
                if self.opt("guests_only") and "guest" not in roles:
                    continue
                result.add_row({
                    "TeamName": team.get("displayName"),
                    "ChannelName": channel.get("displayName"),
                    "MembershipType": channel.get("membershipType"),
                    "MemberName": member.get("displayName"),
                    "MemberEmail": member.get("email"),
                    "Roles": roles or ["member"],
                })
