"""
Entra ID lookups and membership changes on top of GraphClient.
"""

from __future__ import annotations

import logging
import re
from typing import Optional
from urllib.parse import quote

from ..config import GRAPH_BASE_URL, GRAPH_API_VERSION
from .client import GraphClient, GraphAPIError

logger = logging.getLogger("m365_admin_toolkit.graph.entra")

_GUID = re.compile(r"^[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}$")

USER_SELECT = "id,displayName,userPrincipalName,mail,userType,accountEnabled"
MEMBER_SELECT = "id,displayName,userPrincipalName,mail,userType"


def odata_literal(value: str) -> str:
    """Quote a value for an OData $filter string literal."""
    return "'" + value.replace("'", "''") + "'"


def object_type(item: dict) -> str:
    """'#microsoft.graph.user' -> 'user'."""
    return item.get("@odata.type", "").split(".")[-1]


async def resolve_user(graph: GraphClient, identity: str) -> Optional[dict]:
    """Find a user by object id or UPN. Returns None when it does not exist."""
    data = await graph.get(f"users/{quote(identity, safe='@')}", params={"$select": USER_SELECT})
    if data.get("_not_found"):
        return None
    if data.get("_forbidden"):
        raise GraphAPIError(403, data.get("_error_message", "Forbidden"), f"users/{identity}")
    return data


async def resolve_group(graph: GraphClient, name_or_id: str) -> Optional[dict]:
    """Find a group by object id, mail or display name."""
    if _GUID.match(name_or_id):
        data = await graph.get(f"groups/{name_or_id}", params={"$select": "id,displayName,mail"})
        return None if data.get("_not_found") else data

    field = "mail" if "@" in name_or_id else "displayName"
    matches = await graph.get_all_pages(
        "groups",
        params={
            "$filter": f"{field} eq {odata_literal(name_or_id)}",
            "$select": "id,displayName,mail",
        },
    )
    if len(matches) > 1:
        raise GraphAPIError(
            409, f"{len(matches)} groups are named '{name_or_id}'; use the object id", "groups"
        )
    return matches[0] if matches else None


async def get_group_members(graph: GraphClient, group_id: str) -> list[dict]:
    return await graph.get_all_pages(
        f"groups/{group_id}/members",
        params={"$select": MEMBER_SELECT},
    )


async def get_group_owners(graph: GraphClient, group_id: str) -> list[dict]:
    return await graph.get_all_pages(
        f"groups/{group_id}/owners",
        params={"$select": MEMBER_SELECT},
    )


async def add_group_member(graph: GraphClient, group_id: str, directory_object_id: str) -> bool:
    """Returns False when the change guard only planned it."""
    data = await graph.post(
        f"groups/{group_id}/members/$ref",
        {"@odata.id": f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/directoryObjects/{directory_object_id}"},
    )
    return not data.get("_planned")


async def remove_group_member(graph: GraphClient, group_id: str, directory_object_id: str) -> bool:
    data = await graph.delete(f"groups/{group_id}/members/{directory_object_id}/$ref")
    return not data.get("_planned")
