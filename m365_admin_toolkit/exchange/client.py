"""
Exchange Online client.

Runs ExchangeOnlineManagement cmdlets through the PowerShell runner, connecting
with an app-only access token acquired by MSAL. Every call is one script:
connect, run, disconnect.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..config import POWERSHELL_JSON_DEPTH
from ..powershell.runner import PowerShellRunner, ps_array, ps_quote

logger = logging.getLogger("m365_admin_toolkit.exchange")

MAILBOX_FIELDS = (
    "DisplayName, UserPrincipalName, PrimarySmtpAddress, RecipientTypeDetails, "
    "GrantSendOnBehalfTo, AccountDisabled, WhenCreated"
)

# The access token reaches pwsh through its environment, not the process list
TOKEN_ENV_VAR = "M365_EXO_ACCESS_TOKEN"

# Permission holders every mailbox has; never reported
SYSTEM_PRINCIPALS = ("NT AUTHORITY\\SELF", "S-1-5-10")


@dataclass
class Mailbox:
    """Represents an Exchange Online mailbox."""
    display_name: str
    user_principal_name: str
    primary_smtp_address: str
    recipient_type_details: str
    grant_send_on_behalf_to: list[str] = field(default_factory=list)
    account_disabled: bool = False

    @property
    def is_shared(self) -> bool:
        return self.recipient_type_details == "SharedMailbox"

    @classmethod
    def from_cmdlet(cls, data: dict) -> "Mailbox":
        on_behalf = data.get("GrantSendOnBehalfTo") or []
        if isinstance(on_behalf, str):
            on_behalf = [on_behalf]
        return cls(
            display_name=data.get("DisplayName", ""),
            user_principal_name=data.get("UserPrincipalName", ""),
            primary_smtp_address=data.get("PrimarySmtpAddress", ""),
            recipient_type_details=data.get("RecipientTypeDetails", ""),
            grant_send_on_behalf_to=list(on_behalf),
            account_disabled=bool(data.get("AccountDisabled", False)),
        )


class ExchangeClient:
    """Client for Exchange Online PowerShell operations."""

    def __init__(
        self,
        runner: PowerShellRunner,
        access_token: str,
        organization: str,
    ) -> None:
        if not organization:
            raise ValueError("Exchange organization (e.g. contoso.onmicrosoft.com) is required")
        self.runner = runner
        self.organization = organization
        self.runner.env = {**self.runner.env, TOKEN_ENV_VAR: access_token}
        self.runner.preamble = [
            "Import-Module ExchangeOnlineManagement -ErrorAction Stop",
            (
                f"Connect-ExchangeOnline -AccessToken $env:{TOKEN_ENV_VAR} "
                f"-Organization {ps_quote(organization)} -ShowBanner:$false *>$null"
            ),
            f"Remove-Item Env:{TOKEN_ENV_VAR}",
        ]
        self.runner.epilogue = ["Disconnect-ExchangeOnline -Confirm:$false *>$null"]

    @staticmethod
    def _to_json(pipeline: str) -> str:
        return f"{pipeline} | ConvertTo-Json -Depth {POWERSHELL_JSON_DEPTH} -Compress"

    # ── Mailboxes ───────────────────────────────────────────────────────────

    async def get_mailboxes(self, recipient_type_details: Optional[str] = None) -> list[Mailbox]:
        """List mailboxes, optionally limited to one RecipientTypeDetails."""
        cmd = "Get-EXOMailbox -ResultSize Unlimited -Properties GrantSendOnBehalfTo,AccountDisabled,WhenCreated"
        if recipient_type_details:
            cmd += f" -RecipientTypeDetails {ps_quote(recipient_type_details)}"
        rows = await self.runner.run_list([self._to_json(f"{cmd} | Select-Object {MAILBOX_FIELDS}")])
        return [Mailbox.from_cmdlet(r) for r in rows]

    async def get_mailbox(self, identity: str) -> Optional[Mailbox]:
        cmd = (
            f"Get-EXOMailbox -Identity {ps_quote(identity)} "
            "-Properties GrantSendOnBehalfTo,AccountDisabled,WhenCreated "
            "-ErrorAction SilentlyContinue"
        )
        rows = await self.runner.run_list([self._to_json(f"{cmd} | Select-Object {MAILBOX_FIELDS}")])
        return Mailbox.from_cmdlet(rows[0]) if rows else None

    async def set_mailbox_type(self, identity: str, mailbox_type: str = "Shared") -> bool:
        """
        Convert a mailbox (Shared, Regular, Room, Equipment).
        Returns False when the change guard only planned it.
        """
        result = await self.runner.run([
            f"Set-Mailbox -Identity {ps_quote(identity)} -Type {mailbox_type} -Confirm:$false",
        ], parse_json=False)
        return result is not None

    # ── Permissions ─────────────────────────────────────────────────────────

    async def get_mailbox_permissions(self, identity: str) -> list[dict]:
        """Explicit (non-inherited) FullAccess-style permissions on a mailbox."""
        pipeline = (
            f"Get-EXOMailboxPermission -Identity {ps_quote(identity)} | "
            "Where-Object { -not $_.IsInherited -and $_.Deny -eq $false } | "
            "Select-Object User, @{n='AccessRights';e={$_.AccessRights -join ','}}, IsInherited"
        )
        rows = await self.runner.run_list([self._to_json(pipeline)])
        return [r for r in rows if r.get("User") not in SYSTEM_PRINCIPALS]

    async def get_recipient_permissions(self, identity: str) -> list[dict]:
        """SendAs permissions on a recipient."""
        pipeline = (
            f"Get-EXORecipientPermission -Identity {ps_quote(identity)} | "
            "Where-Object { -not $_.IsInherited } | "
            "Select-Object Trustee, @{n='AccessRights';e={$_.AccessRights -join ','}}"
        )
        rows = await self.runner.run_list([self._to_json(pipeline)])
        return [r for r in rows if r.get("Trustee") not in SYSTEM_PRINCIPALS]

    async def add_mailbox_permission(
        self, identity: str, user: str, access_rights: str = "FullAccess", automapping: bool = True
    ) -> bool:
        result = await self.runner.run([
            (
                f"Add-MailboxPermission -Identity {ps_quote(identity)} -User {ps_quote(user)} "
                f"-AccessRights {access_rights} -InheritanceType All "
                f"-AutoMapping ${str(automapping).lower()} -Confirm:$false | Out-Null"
            ),
        ], parse_json=False)
        return result is not None

    async def remove_mailbox_permission(
        self, identity: str, user: str, access_rights: str = "FullAccess"
    ) -> bool:
        result = await self.runner.run([
            (
                f"Remove-MailboxPermission -Identity {ps_quote(identity)} -User {ps_quote(user)} "
                f"-AccessRights {access_rights} -InheritanceType All -Confirm:$false"
            ),
        ], parse_json=False)
        return result is not None

    # ── Statistics & audit ──────────────────────────────────────────────────

    async def get_folder_statistics(self, identity: str) -> list[dict]:
        pipeline = (
            f"Get-EXOMailboxFolderStatistics -Identity {ps_quote(identity)} | "
            "Select-Object Name, FolderPath, FolderType, ItemsInFolder, "
            "@{n='FolderSize';e={$_.FolderSize.ToString()}}, ItemsInFolderAndSubfolders"
        )
        return await self.runner.run_list([self._to_json(pipeline)])

    async def search_unified_audit_log(
        self,
        start: datetime,
        end: datetime,
        operations: Optional[list[str]] = None,
        user_ids: Optional[list[str]] = None,
        result_size: int = 5000,
    ) -> list[dict]:
        """Search-UnifiedAuditLog over a date range."""
        cmd = (
            f"Search-UnifiedAuditLog -StartDate {ps_quote(start.strftime('%Y-%m-%d %H:%M:%S'))} "
            f"-EndDate {ps_quote(end.strftime('%Y-%m-%d %H:%M:%S'))} "
            f"-ResultSize {int(result_size)}"
        )
        if operations:
            cmd += f" -Operations {ps_array(operations)}"
        if user_ids:
            cmd += f" -UserIds {ps_array(user_ids)}"
        pipeline = (
            f"{cmd} | Select-Object @{{n='CreationDate';e={{$_.CreationDate.ToString('o')}}}}, "
            "UserIds, Operations, RecordType, AuditData"
        )
        return await self.runner.run_list([self._to_json(pipeline)])
