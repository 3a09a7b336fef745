"""
Configuration module for the M365 Admin Toolkit.
Defines tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class DelegatedAuth:
    """Delegated (interactive) authentication configuration."""
    tenant_id: str
    client_id: str

@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

# Rate limiting / throttling
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops


# ─── Exchange Online / PowerShell Settings ──────────────────────────────────

EXCHANGE_SCOPES = ["https://outlook.office365.com/.default"]
POWERSHELL_EXECUTABLE = "pwsh"
POWERSHELL_TIMEOUT_SECONDS = 300
POWERSHELL_JSON_DEPTH = 4


# ─── Task Settings ──────────────────────────────────────────────────────────

@dataclass
class TaskConfig:
    """Controls for enumeration and mutation behavior."""
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = MAX_PAGES_PER_ENDPOINT
    stale_days: int = 90                  # Days without sign-in/logon = stale
    dry_run: bool = True                  # Record mutations instead of applying
    powershell_executable: str = POWERSHELL_EXECUTABLE
    powershell_timeout_seconds: int = POWERSHELL_TIMEOUT_SECONDS
    ad_server: str = ""                   # Domain controller for -Server
    exchange_organization: str = ""       # e.g. contoso.onmicrosoft.com


# ─── Output Configuration ───────────────────────────────────────────────────

REPORT_FORMATS = ("csv", "xlsx", "json")


@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    formats: list[str] = field(default_factory=lambda: ["csv"])

    def __post_init__(self):
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_admin_reports")

    @property
    def report_dir(self) -> Path:
        return Path(self.base_dir)

    @property
    def journal_path(self) -> Path:
        return self.report_dir / ".journal" / "runs.db"


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ToolkitConfig:
    """Top-level configuration for the toolkit."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    tasks: TaskConfig = field(default_factory=TaskConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    journal_enabled: bool = True
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolkitConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e

        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            try:
                if "certificate" in auth_data:
                    c = auth_data["certificate"]
                    config.auth.certificate = CertificateAuth(
                        tenant_id=c["tenant_id"],
                        client_id=c["client_id"],
                        certificate_path=c.get("certificate_path", "./base64.txt"),
                        certificate_password=c.get("certificate_password", ""),
                        thumbprint=c.get("thumbprint", ""),
                    )
                if "delegated" in auth_data:
                    d = auth_data["delegated"]
                    config.auth.delegated = DelegatedAuth(
                        tenant_id=d["tenant_id"],
                        client_id=d["client_id"],
                    )
            except KeyError as e:
                raise ConfigError(f"Missing auth setting in {path}: {e}") from e
        if "tasks" in data:
            for k, v in data["tasks"].items():
                if hasattr(config.tasks, k):
                    setattr(config.tasks, k, v)
        if "output" in data:
            for k, v in data["output"].items():
                if hasattr(config.output, k):
                    setattr(config.output, k, v)
        config.journal_enabled = data.get("journal_enabled", True)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Graph API Permissions ─────────────────────────────────────────

REQUIRED_PERMISSIONS = {
    # Directory
    "User.Read.All": "Enumerate users, guests and sign-in activity",
    "AuditLog.Read.All": "Read signInActivity for stale account filters",
    "Group.Read.All": "Read groups, owners and memberships",
    "GroupMember.ReadWrite.All": "Add and remove group members",

    # Mail
    "MailboxSettings.ReadWrite": "Read and set automatic replies",

    # Collaboration
    "Sites.Read.All": "Enumerate SharePoint sites",
    "Team.ReadBasic.All": "Enumerate Teams",
    "Channel.ReadBasic.All": "Enumerate Teams channels",
    "ChannelMember.Read.All": "Read channel membership",

    # Exchange Online (separate resource, app role)
    "Exchange.ManageAsApp": "Run Exchange Online cmdlets app-only",
}
