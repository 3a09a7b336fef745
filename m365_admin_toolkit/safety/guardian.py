"""
Change Guard — Enforces dry-run by default.
Every mutation (HTTP write, mutating cmdlet, filesystem change) is checked
here first. In dry-run mode it is recorded as a planned change and NOT sent.
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("m365_admin_toolkit.safety")

# ─── Write detection ─────────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Known read-only POST endpoints (Graph uses POST for some queries)
SAFE_POST_ENDPOINTS = [
    re.compile(r"/\$batch$"),
    re.compile(r"/microsoft\.graph\.getByIds$"),
    re.compile(r"/getMemberGroups$"),
    re.compile(r"/checkMemberGroups$"),
]

# PowerShell verbs that change state
MUTATING_VERBS = (
    "Set", "Add", "Remove", "New", "Enable", "Disable",
    "Move", "Grant", "Revoke", "Clear", "Rename",
)
_MUTATING_CMDLET = re.compile(
    r"(?<![\w-])(?:" + "|".join(MUTATING_VERBS) + r")-(?!Location\b|Variable\b|StrictMode\b|Object\b|ExecutionPolicy\b)[A-Za-z]+",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ChangeGuard:
    """
    Gatekeeper for state changes.
    Maintains an audit trail of planned (dry-run) and applied changes.
    """

    def __init__(self, apply: bool = False):
        self.apply = apply
        self.planned: list[dict] = []
        self.applied: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = _now()

    @property
    def mode(self) -> str:
        return "APPLY" if self.apply else "DRY-RUN"

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Decide whether an HTTP request may be sent.
        Returns True to send it, False when it was recorded as planned only.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper not in WRITE_METHODS:
            return True

        if method_upper == "POST":
            for pattern in SAFE_POST_ENDPOINTS:
                if pattern.search(url):
                    return True

        return self._gate("http", f"{method_upper} {url}", body)

    def validate_command(self, script: str) -> bool:
        """Decide whether a PowerShell script may run."""
        self.checks_performed += 1
        cmdlets = _MUTATING_CMDLET.findall(script)
        if not cmdlets:
            return True
        return self._gate("powershell", ", ".join(sorted(set(cmdlets))), {"script": script})

    def validate_action(self, kind: str, target: str, detail: Optional[dict] = None) -> bool:
        """Decide whether a local action (file delete, ...) may run."""
        self.checks_performed += 1
        return self._gate(kind, target, detail)

    def _gate(self, kind: str, target: str, detail: Optional[dict]) -> bool:
        entry = {
            "timestamp": _now(),
            "kind": kind,
            "target": target,
        }
        if detail:
            entry["detail"] = detail

        if self.apply:
            self.applied.append(entry)
            logger.info(f"Applying {kind} change: {target}")
            return True

        self.planned.append(entry)
        logger.info(f"DRY-RUN, not applied: {kind} {target}")
        return False

    def get_audit_record(self) -> dict:
        """Return the change audit record."""
        return {
            "change_guard": {
                "mode": self.mode,
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "planned_changes": len(self.planned),
                "applied_changes": len(self.applied),
                "planned": self.planned,
                "applied": self.applied,
            }
        }

    def print_banner(self):
        """Print the run mode banner."""
        print("=" * 75)
        if self.apply:
            print("  APPLY MODE -- changes WILL be made to the tenant/directory/filesystem")
        else:
            print("  DRY-RUN MODE -- no changes will be made")
            print("  * Mutations are recorded as 'Planned' in the report")
            print("  * Re-run with --apply to perform them")
        print("=" * 75)
        sys.stdout.flush()
