"""
NTFS ACL client and stale-file helpers.

ACLs are read and written through Get-Acl/Set-Acl via the PowerShell runner.
File cleanup walks the local tree with pathlib; deletion goes through the
change guard.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import POWERSHELL_JSON_DEPTH
from ..powershell.runner import PowerShellRunner, ps_quote
from ..safety.guardian import ChangeGuard

logger = logging.getLogger("m365_admin_toolkit.filesystem")

DEFAULT_INHERITANCE = "ContainerInherit,ObjectInherit"

_ACL_SELECT = (
    "$acl = Get-Acl -LiteralPath {path}; "
    "$acl.Access | Select-Object "
    "@{{n='Identity';e={{$_.IdentityReference.Value}}}}, "
    "@{{n='Rights';e={{$_.FileSystemRights.ToString()}}}}, "
    "@{{n='AccessType';e={{$_.AccessControlType.ToString()}}}}, "
    "IsInherited, "
    "@{{n='InheritanceFlags';e={{$_.InheritanceFlags.ToString()}}}}, "
    "@{{n='PropagationFlags';e={{$_.PropagationFlags.ToString()}}}}, "
    "@{{n='Owner';e={{$acl.Owner}}}}"
)


@dataclass
class AclEntry:
    """One access rule on a filesystem object."""
    path: str
    identity: str
    rights: str
    access_type: str
    is_inherited: bool
    inheritance_flags: str = "None"
    propagation_flags: str = "None"
    owner: str = ""

    @classmethod
    def from_cmdlet(cls, path: str, data: dict) -> "AclEntry":
        return cls(
            path=path,
            identity=data.get("Identity", ""),
            rights=data.get("Rights", ""),
            access_type=data.get("AccessType", ""),
            is_inherited=bool(data.get("IsInherited", False)),
            inheritance_flags=data.get("InheritanceFlags", "None"),
            propagation_flags=data.get("PropagationFlags", "None"),
            owner=data.get("Owner", ""),
        )

    def to_row(self) -> dict:
        return {
            "Path": self.path,
            "Owner": self.owner,
            "Identity": self.identity,
            "Rights": self.rights,
            "AccessType": self.access_type,
            "IsInherited": self.is_inherited,
            "InheritanceFlags": self.inheritance_flags,
            "PropagationFlags": self.propagation_flags,
        }


class AclClient:
    """Reads and modifies discretionary ACLs."""

    def __init__(self, runner: PowerShellRunner):
        self.runner = runner

    async def get_acl(self, path: str) -> list[AclEntry]:
        script = _ACL_SELECT.format(path=ps_quote(path))
        rows = await self.runner.run_list(
            [f"{script} | ConvertTo-Json -Depth {POWERSHELL_JSON_DEPTH} -Compress"]
        )
        return [AclEntry.from_cmdlet(path, r) for r in rows]

    async def add_access_rule(
        self,
        path: str,
        identity: str,
        rights: str = "Modify",
        access_type: str = "Allow",
        inheritance: str = DEFAULT_INHERITANCE,
    ) -> bool:
        commands = [
            f"$acl = Get-Acl -LiteralPath {ps_quote(path)}",
            (
                "$rule = New-Object System.Security.AccessControl.FileSystemAccessRule("
                f"{ps_quote(identity)}, {ps_quote(rights)}, {ps_quote(inheritance)}, "
                f"'None', {ps_quote(access_type)})"
            ),
            "$acl.AddAccessRule($rule)",
            f"Set-Acl -LiteralPath {ps_quote(path)} -AclObject $acl",
        ]
        return await self.runner.run(commands, parse_json=False) is not None

    async def remove_access_rules(self, path: str, identity: str) -> bool:
        """Remove every explicit rule for identity."""
        commands = [
            f"$acl = Get-Acl -LiteralPath {ps_quote(path)}",
            f"$id = New-Object System.Security.Principal.NTAccount({ps_quote(identity)})",
            "$acl.PurgeAccessRules($id)",
            f"Set-Acl -LiteralPath {ps_quote(path)} -AclObject $acl",
        ]
        return await self.runner.run(commands, parse_json=False) is not None

    async def take_ownership(self, path: str, owner: str = "BUILTIN\\Administrators") -> bool:
        commands = [
            f"$acl = Get-Acl -LiteralPath {ps_quote(path)}",
            f"$acl.SetOwner((New-Object System.Security.Principal.NTAccount({ps_quote(owner)})))",
            f"Set-Acl -LiteralPath {ps_quote(path)} -AclObject $acl",
        ]
        return await self.runner.run(commands, parse_json=False) is not None

    async def disable_inheritance(self, path: str, keep_inherited: bool = True) -> bool:
        """Protect the ACL from inheritance, copying inherited rules when asked."""
        copy_flag = "$true" if keep_inherited else "$false"
        commands = [
            f"$acl = Get-Acl -LiteralPath {ps_quote(path)}",
            f"$acl.SetAccessRuleProtection($true, {copy_flag})",
            f"Set-Acl -LiteralPath {ps_quote(path)} -AclObject $acl",
        ]
        return await self.runner.run(commands, parse_json=False) is not None


# ── Local tree helpers ──────────────────────────────────────────────────────

def iter_folders(root: Path, max_depth: int = 0) -> Iterator[Path]:
    """Yield root and its sub-folders down to max_depth (0 = root only)."""
    yield root
    if max_depth <= 0:
        return
    try:
        children = sorted(p for p in root.iterdir() if p.is_dir())
    except OSError as e:
        logger.warning(f"Cannot list {root}: {e}")
        return
    for child in children:
        yield from iter_folders(child, max_depth - 1)


def find_stale_files(
    root: Path,
    older_than_days: int,
    pattern: str = "*",
    now: Optional[datetime] = None,
) -> Iterator[tuple[Path, datetime]]:
    """Yield (path, modified) for files under root last modified before the cutoff."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=older_than_days)
    for path in sorted(root.rglob(pattern)):
        if not path.is_file():
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError as e:
            logger.warning(f"Cannot stat {path}: {e}")
            continue
        if modified < cutoff:
            yield path, modified


def delete_file(path: Path, guard: ChangeGuard) -> bool:
    """Delete path unless the change guard keeps it as planned."""
    if not guard.validate_action("delete", str(path)):
        return False
    path.unlink()
    return True
