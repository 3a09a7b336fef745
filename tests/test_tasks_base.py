"""
Tests for BaseTask plumbing and the collaboration tasks.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from m365_admin_toolkit.graph.client import GraphAPIError
from m365_admin_toolkit.tasks import ALL_TASKS, TASKS_BY_NAME, SiteOwnersTask, TeamChannelsTask
from m365_admin_toolkit.tasks.base import BaseTask, TaskResult


class EchoTask(BaseTask):
    name = "echo"
    columns = ["Value"]
    defaults = {"identity": [], "identities_file": None}

    async def run(self, result: TaskResult):
        await self.for_each(self.targets(), result, self._echo)

    async def _echo(self, value, result):
        if value == "boom":
            raise ValueError("bad value")
        result.add_row({"Value": value})


class TestBaseTask:

    def test_unknown_option_rejected(self, make_context):
        with pytest.raises(TypeError):
            EchoTask(make_context(), colour="blue")

    def test_targets_merge_file_and_dedupe(self, make_context, tmp_path):
        path = tmp_path / "ids.txt"
        path.write_text("B\nc\n", encoding="utf-8")
        task = EchoTask(make_context(), identity=["a", "b"], identities_file=str(path))
        assert task.targets() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_item_error_on_report_task_continues(self, make_context):
        result = await EchoTask(make_context(), identity=["x", "boom", "y"]).execute()
        assert [r["Value"] for r in result.rows] == ["x", "y"]
        assert result.has_item_errors
        assert not result.failed
        assert result.metadata["mode"] == "REPORT"
        assert result.metadata["items_matched"] == 3

    @pytest.mark.asyncio
    async def test_missing_service_is_fatal(self, make_context):
        result = await SiteOwnersTask(make_context()).execute()
        assert result.failed
        assert "graph" in result.metadata["errors"][0]

    def test_registry(self):
        assert len(ALL_TASKS) == len(TASKS_BY_NAME) == 17
        assert sum(1 for t in ALL_TASKS if t.mutating) == 7
        assert TASKS_BY_NAME["convert-shared"].mutating


def collaboration_graph(group_sites=None, owners=None, all_sites=None, channels=None, channel_members=None,
                        all_sites_error=None, broken_groups=()):
    graph = MagicMock()

    async def get(endpoint, params=None, **kwargs):
        group_id = endpoint.split("/")[1]
        if group_id in broken_groups:
            raise GraphAPIError(500, "Internal error", endpoint)
        return (group_sites or {}).get(group_id, {"value": [], "_not_found": True})

    async def get_all_pages(endpoint, params=None, **kwargs):
        parts = endpoint.split("/")
        if endpoint == "sites/getAllSites":
            if all_sites_error:
                raise all_sites_error
            return list(all_sites or [])
        if endpoint == "sites":
            return list(all_sites or [])
        if endpoint == "groups":
            if "Team" in params["$filter"]:
                return [{"id": "t1", "displayName": "Project X"}, {"id": "t2", "displayName": "Social"}]
            return [{"id": "g1", "displayName": "Finance", "mail": "finance@contoso.com"},
                    {"id": "g2", "displayName": "HR"},
                    {"id": "g3", "displayName": "No Site"}]
        if parts[-1] == "owners":
            return (owners or {}).get(parts[1], [])
        if parts[-1] == "channels":
            return (channels or {}).get(parts[1], [])
        if parts[-1] == "members":
            return (channel_members or {}).get(parts[3], [])
        return []

    graph.get = AsyncMock(side_effect=get)
    graph.get_all_pages = AsyncMock(side_effect=get_all_pages)
    return graph


ALL_SITES = [
    {"id": "s-fin", "displayName": "Finance", "webUrl": "https://contoso.sharepoint.com/sites/Finance"},
    {"id": "s-hr", "displayName": "HR", "webUrl": "https://contoso.sharepoint.com/sites/HR"},
    {"id": "s-intranet", "displayName": "Intranet", "webUrl": "https://contoso.sharepoint.com/sites/Intranet"},
    {"id": "s-ann", "displayName": "Ann", "isPersonalSite": True,
     "webUrl": "https://contoso-my.sharepoint.com/personal/ann_contoso_com"},
]

GROUP_SITES = {
    "g1": {"id": "s-fin", "webUrl": "https://contoso.sharepoint.com/sites/Finance"},
    # Matched by URL when the ids differ
    "g2": {"id": "hr-root", "webUrl": "https://contoso.sharepoint.com/sites/HR/"},
}


class TestSiteOwners:

    @pytest.mark.asyncio
    async def test_every_site_listed_with_group_owners(self, make_context):
        graph = collaboration_graph(
            group_sites=GROUP_SITES,
            owners={"g1": [{"userPrincipalName": "ann@contoso.com"}]},
            all_sites=ALL_SITES,
        )
        result = await SiteOwnersTask(make_context(graph=graph)).execute()
        assert not result.failed
        assert [(r["SiteName"], r["SiteType"], r["OwnerCount"]) for r in result.rows] == [
            ("Finance", "Group-connected", 1),
            ("HR", "Group-connected", 0),
            ("Intranet", "Site", None),
        ]
        assert result.rows[0]["Owners"] == ["ann@contoso.com"]
        assert result.rows[0]["GroupMail"] == "finance@contoso.com"
        assert result.metadata["items_enumerated"] == 3

    @pytest.mark.asyncio
    async def test_ownerless_only_reports_group_sites_without_owners(self, make_context):
        graph = collaboration_graph(
            group_sites=GROUP_SITES,
            owners={"g1": [{"userPrincipalName": "ann@contoso.com"}]},
            all_sites=ALL_SITES,
        )
        result = await SiteOwnersTask(make_context(graph=graph), ownerless_only=True).execute()
        assert [r["SiteUrl"] for r in result.rows] == ["https://contoso.sharepoint.com/sites/HR"]

    @pytest.mark.asyncio
    async def test_personal_sites_on_request(self, make_context):
        graph = collaboration_graph(group_sites=GROUP_SITES, all_sites=ALL_SITES)
        result = await SiteOwnersTask(make_context(graph=graph), include_personal=True).execute()
        assert result.rows[-1]["SiteType"] == "Personal"
        assert len(result.rows) == 4

    @pytest.mark.asyncio
    async def test_falls_back_to_site_search(self, make_context):
        graph = collaboration_graph(
            group_sites=GROUP_SITES,
            all_sites=ALL_SITES,
            all_sites_error=GraphAPIError(400, "Not supported for delegated", "sites/getAllSites"),
        )
        result = await SiteOwnersTask(make_context(graph=graph), url_contains="intranet").execute()
        assert [r["SiteName"] for r in result.rows] == ["Intranet"]
        endpoints = [c.args[0] for c in graph.get_all_pages.call_args_list]
        assert endpoints[:2] == ["sites/getAllSites", "sites"]
        assert graph.get_all_pages.call_args_list[1].kwargs["params"]["search"] == "*"

    @pytest.mark.asyncio
    async def test_unreadable_group_site_is_a_warning(self, make_context):
        graph = collaboration_graph(group_sites=GROUP_SITES, all_sites=ALL_SITES, broken_groups=("g1",))
        result = await SiteOwnersTask(make_context(graph=graph)).execute()
        assert not result.failed
        assert result.rows[0]["SiteType"] == "Site"
        assert len(result.metadata["warnings"]) == 1


@pytest.mark.asyncio
async def test_team_channels_guests_only(make_context):
    graph = collaboration_graph(
        channels={"t1": [{"id": "c1", "displayName": "General", "membershipType": "standard"}]},
        channel_members={"c1": [
            {"displayName": "Ann", "email": "ann@contoso.com", "roles": ["owner"]},
            {"displayName": "Gus", "email": "gus@partner.com", "roles": ["guest"]},
        ]},
    )
    result = await TeamChannelsTask(make_context(graph=graph), team="project", guests_only=True).execute()
    assert result.rows == [{
        "TeamName": "Project X", "ChannelName": "General", "MembershipType": "standard",
        "MemberName": "Gus", "MemberEmail": "gus@partner.com", "Roles": ["guest"],
    }]
