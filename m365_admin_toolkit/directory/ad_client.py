"""
On-premises Active Directory client.

Wraps the RSAT ActiveDirectory PowerShell module. Queries return plain dicts
(one per AD object); mutations return False when the change guard only
planned them.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import POWERSHELL_JSON_DEPTH
from ..powershell.runner import PowerShellRunner, ps_quote

logger = logging.getLogger("m365_admin_toolkit.directory")

USER_PROPERTIES = [
    "SamAccountName", "UserPrincipalName", "DisplayName", "Enabled",
    "LastLogonDate", "whenCreated", "DistinguishedName", "mail",
]

# AD dates come back as DateTime objects; serialize as ISO-8601 for filters
_DATE_PROPERTIES = {"LastLogonDate", "whenCreated", "whenChanged", "PasswordLastSet"}


def _select(properties: list[str]) -> str:
    parts = []
    for p in properties:
        if p in _DATE_PROPERTIES:
            parts.append(f"@{{n='{p}';e={{if ($_.{p}) {{ $_.{p}.ToUniversalTime().ToString('o') }}}}}}")
        else:
            parts.append(p)
    return ", ".join(parts)


class ActiveDirectoryClient:
    """Client for ActiveDirectory module operations."""

    def __init__(self, runner: PowerShellRunner, server: Optional[str] = None):
        self.runner = runner
        self.server = server
        self.runner.preamble = ["Import-Module ActiveDirectory -ErrorAction Stop"]
        self.runner.epilogue = []

    def _server_arg(self) -> str:
        return f" -Server {ps_quote(self.server)}" if self.server else ""

    @staticmethod
    def _to_json(pipeline: str) -> str:
        return f"{pipeline} | ConvertTo-Json -Depth {POWERSHELL_JSON_DEPTH} -Compress"

    # ── Queries ─────────────────────────────────────────────────────────────

    async def get_users(
        self,
        search_base: Optional[str] = None,
        filter: str = "*",
        properties: Optional[list[str]] = None,
    ) -> list[dict]:
        """Get-ADUser with a PowerShell -Filter, optionally scoped to an OU."""
        properties = properties or USER_PROPERTIES
        cmd = f"Get-ADUser -Filter {ps_quote(filter)} -Properties {','.join(properties)}"
        if search_base:
            cmd += f" -SearchBase {ps_quote(search_base)}"
        cmd += self._server_arg()
        return await self.runner.run_list([self._to_json(f"{cmd} | Select-Object {_select(properties)}")])

    async def get_group_members(self, group: str, recursive: bool = False) -> list[dict]:
        cmd = f"Get-ADGroupMember -Identity {ps_quote(group)}"
        if recursive:
            cmd += " -Recursive"
        cmd += self._server_arg()
        fields = "Name, SamAccountName, objectClass, DistinguishedName"
        return await self.runner.run_list([self._to_json(f"{cmd} | Select-Object {fields}")])

    # ── Mutations ───────────────────────────────────────────────────────────

    async def add_group_member(self, group: str, member: str) -> bool:
        result = await self.runner.run([
            f"Add-ADGroupMember -Identity {ps_quote(group)} -Members {ps_quote(member)}"
            f"{self._server_arg()} -Confirm:$false",
        ], parse_json=False)
        return result is not None

    async def remove_group_member(self, group: str, member: str) -> bool:
        result = await self.runner.run([
            f"Remove-ADGroupMember -Identity {ps_quote(group)} -Members {ps_quote(member)}"
            f"{self._server_arg()} -Confirm:$false",
        ], parse_json=False)
        return result is not None

    async def disable_account(self, identity: str) -> bool:
        result = await self.runner.run([
            f"Disable-ADAccount -Identity {ps_quote(identity)}{self._server_arg()} -Confirm:$false",
        ], parse_json=False)
        return result is not None

    async def move_object(self, identity: str, target_ou: str) -> bool:
        """Move an object by DistinguishedName into another OU."""
        result = await self.runner.run([
            f"Move-ADObject -Identity {ps_quote(identity)} -TargetPath {ps_quote(target_ou)}"
            f"{self._server_arg()} -Confirm:$false",
        ], parse_json=False)
        return result is not None
