"""
Filesystem tasks
NTFS ACL report, ACL changes / ownership, and stale file clean-up.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from ..filesystem.acl import AclEntry, delete_file, find_stale_files, iter_folders
from ..filters import dedupe, load_identities
from .base import BaseTask, TaskResult, STATUS_SKIPPED

logger = logging.getLogger("m365_admin_toolkit.tasks.filesystem")

ACL_COLUMNS = [
    "Path", "Owner", "Identity", "Rights", "AccessType",
    "IsInherited", "InheritanceFlags", "PropagationFlags",
]


class FolderAclTask(BaseTask):
    name = "folder-acl"
    description = "Report NTFS permissions of folders down to a depth"
    services = ("acl",)
    columns = ACL_COLUMNS
    defaults = {
        "path": [],
        "depth": 0,
        "explicit_only": False,
        "identity_contains": None,
    }

    async def run(self, result: TaskResult):
        roots = [Path(p) for p in self.opt("path")]
        if not roots:
            raise ValueError("At least one --path is required")
        folders = [f for root in roots for f in iter_folders(root, self.opt("depth"))]
        result.metadata["items_enumerated"] = len(folders)
        await self.for_each(folders, result, self._acl_rows)

    async def _acl_rows(self, folder: Path, result: TaskResult):
        fragment = (self.opt("identity_contains") or "").lower()
        for entry in await self.acl.get_acl(str(folder)):
            if self.opt("explicit_only") and entry.is_inherited:
                continue
            if fragment and fragment not in entry.identity.lower():
                continue
            result.add_row(entry.to_row())


def _has_explicit(
    entries: list[AclEntry],
    identity: str,
    rights: str = None,
    access_type: str = None,
) -> bool:
    for e in entries:
        if e.is_inherited or e.identity.lower() != identity.lower():
            continue
        if access_type and e.access_type.lower() != access_type.lower():
            continue
        if rights is None or rights.lower() in e.rights.lower():
            return True
    return False


class FolderPermissionTask(BaseTask):
    name = "folder-permission"
    description = "Grant or revoke an NTFS permission, take ownership or disable inheritance on paths"
    services = ("acl",)
    mutating = True
    columns = ["Path", "Action", "Identity", "AccessType", "Rights"]
    defaults = {
        "path": [],
        "paths_file": None,
        "action": "grant",
        "user": None,
        "rights": "Modify",
        "deny": False,
        "owner": "BUILTIN\\Administrators",
        "keep_inherited": True,
    }

    def error_fields(self, item) -> dict:
        return {"Path": item, "Action": self.opt("action"), "Identity": self.opt("user"), "Rights": self.opt("rights")}

    def targets(self) -> list[str]:
        paths = list(self.opt("path"))
        if self.opt("paths_file"):
            paths.extend(load_identities(self.opt("paths_file")))
        return dedupe(paths)

    async def run(self, result: TaskResult):
        action = self.opt("action")
        if action not in ("grant", "revoke", "take-ownership", "disable-inheritance"):
            raise ValueError(f"Unknown action: {action}")
        if action in ("grant", "revoke") and not self.opt("user"):
            raise ValueError("--user is required to grant or revoke")
        paths = self.targets()
        if not paths:
            raise ValueError("No paths given; use --path or --paths-file")
        result.metadata["items_enumerated"] = len(paths)
        await self.for_each(paths, result, self._apply)

    async def _apply(self, path: str, result: TaskResult):
        action = self.opt("action")
        user = self.opt("user")
        access_type = "Deny" if self.opt("deny") else "Allow"
        row = {"Path": path, "Action": action, "Identity": user, "AccessType": "", "Rights": self.opt("rights")}

        if action == "take-ownership":
            row["Identity"] = self.opt("owner")
            row["Rights"] = "Owner"
            executed = await self.acl.take_ownership(path, self.opt("owner"))
            result.add_outcome(path, self.applied_status(executed), "", **row)
            return

        entries = await self.acl.get_acl(path)
        if action == "disable-inheritance":
            row["Identity"] = ""
            row["Rights"] = "Copy inherited" if self.opt("keep_inherited") else "Remove inherited"
            if not any(e.is_inherited for e in entries):
                result.add_outcome(path, STATUS_SKIPPED, "No inherited entries", **row)
                return
            executed = await self.acl.disable_inheritance(path, keep_inherited=self.opt("keep_inherited"))
        elif action == "grant":
            row["AccessType"] = access_type
            if _has_explicit(entries, user, self.opt("rights"), access_type):
                result.add_outcome(path, STATUS_SKIPPED, f"{access_type} entry already present", **row)
                return
            executed = await self.acl.add_access_rule(path, user, self.opt("rights"), access_type=access_type)
        else:
            if not _has_explicit(entries, user):
                result.add_outcome(path, STATUS_SKIPPED, "No explicit entry to remove", **row)
                return
            executed = await self.acl.remove_access_rules(path, user)
        result.add_outcome(path, self.applied_status(executed), "", **row)


class CleanupFilesTask(BaseTask):
    name = "cleanup-files"
    description = "Delete files older than N days under a folder"
    services = ()
    mutating = True
    columns = ["Path", "LastModified", "SizeBytes"]
    defaults = {"path": [], "older_than_days": None, "pattern": "*", "now": None}

    def error_fields(self, item) -> dict:
        return {"Path": str(item[0]), "LastModified": item[1].isoformat()}

    async def run(self, result: TaskResult):
        days = self.opt("older_than_days")
        if days is None or days < 1:
            raise ValueError("--older-than-days must be at least 1")
        roots = [Path(p) for p in self.opt("path")]
        if not roots:
            raise ValueError("At least one --path is required")
        for root in roots:
            if not root.is_dir():
                raise NotADirectoryError(f"{root} is not a directory")

        now = self.opt("now") or datetime.now(timezone.utc)
        stale = [f for root in roots for f in find_stale_files(root, days, self.opt("pattern"), now=now)]
        result.metadata["items_enumerated"] = len(stale)
        await self.for_each(stale, result, self._delete, target_of=lambda f: str(f[0]))

    async def _delete(self, item, result: TaskResult):
        path, modified = item
        size = path.stat().st_size
        row = {"Path": str(path), "LastModified": modified.isoformat(), "SizeBytes": size}
        executed = delete_file(path, self.guard)
        result.add_outcome(str(path), self.applied_status(executed), "", **row)
