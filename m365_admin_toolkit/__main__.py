"""
M365 Admin Toolkit — Command line entry point

Usage:
    m365-admin guest-users --domain contoso.com --stale-days 90
    m365-admin convert-shared --identities-file leavers.csv            # dry-run
    m365-admin convert-shared --identities-file leavers.csv --apply    # make changes
    m365-admin folder-acl --path \\\\fs01\\share --depth 2 --formats csv xlsx
    m365-admin history
    m365-admin permissions

Profile management:
    m365-admin profile add <name> --tenant-id ... --client-id ... --organization ...
    m365-admin profile list
    m365-admin profile remove <name>
    m365-admin profile set-default <name>

Exit codes: 0 success, 1 configuration/authentication/connection failure,
2 completed with per-item errors.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import __version__
from .auth.authenticator import Authenticator, AuthenticationError
from .config import (
    EXCHANGE_SCOPES,
    REPORT_FORMATS,
    CertificateAuth,
    ConfigError,
    DelegatedAuth,
    ToolkitConfig,
)
from .directory.ad_client import ActiveDirectoryClient
from .exchange.client import ExchangeClient
from .filesystem.acl import AclClient
from .graph.client import GraphAPIError, GraphClient
from .journal.store import RunJournal
from .powershell.runner import PowerShellError, PowerShellRunner
from .profiles import ProfileStore, TenantProfile, resolve_profile
from .reporting import export_report
from .safety.guardian import ChangeGuard
from .tasks import ALL_TASKS, TASKS_BY_NAME, BaseTask, TaskContext, TaskResult

logger = logging.getLogger("m365_admin_toolkit.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_ITEM_ERRORS = 2


# ---------------------------------------------------------------------------
# Per-task options
# ---------------------------------------------------------------------------

OPTION_HELP = {
    "identity": "One or more identities (UPN, mailbox, sAMAccountName)",
    "identities_file": "Text or CSV file with one identity per line",
    "domain": "Only objects whose UPN/mail ends with one of these domains",
    "recipient_type": "Mailbox RecipientTypeDetails (e.g. UserMailbox, SharedMailbox)",
    "stale_days": "Days without sign-in/logon that count as stale",
    "enabled_only": "Only enabled objects",
    "disabled_only": "Only disabled objects",
    "group": "Group display name, mail or object ID",
    "source": "Group directory",
    "recursive": "Expand nested group membership",
    "action": "Change to make",
    "user": "User the permission is granted to or revoked from",
    "automapping": "Auto-map granted mailboxes in Outlook",
    "search_base": "Distinguished name of the OU to search",
    "move_to": "Distinguished name of the OU to move disabled accounts to",
    "exclude": "sAMAccountNames never to disable",
    "min_items": "Only folders with at least this many items",
    "internal_message": "Reply sent to senders inside the organization",
    "external_message": "Reply sent to external senders (default: internal message)",
    "external_audience": "none, contactsOnly or all",
    "start": "Start (ISO date/time)",
    "end": "End (ISO date/time)",
    "time_zone": "Time zone of the schedule",
    "days": "Days back from --end when --start is not given",
    "operations": "Audit operations to include (e.g. MailItemsAccessed)",
    "result_size": "Maximum audit records returned",
    "url_contains": "Only sites whose URL contains this text",
    "ownerless_only": "Only sites without owners",
    "team": "Only teams whose name contains this text",
    "guests_only": "Only guest channel members",
    "path": "One or more folder paths",
    "paths_file": "Text or CSV file with one folder path per line",
    "depth": "Sub-folder depth to include (0 = only the given folders)",
    "explicit_only": "Hide inherited ACL entries",
    "identity_contains": "Only ACL entries whose identity contains this text",
    "rights": "FileSystemRights (e.g. Modify, ReadAndExecute, FullControl)",
    "deny": "Add a Deny entry instead of Allow",
    "owner": "New owner for take-ownership",
    "keep_inherited": "Drop inherited entries instead of copying them when disabling inheritance",
    "include_personal": "Include OneDrive personal sites",
    "older_than_days": "Delete files last modified more than this many days ago",
    "pattern": "Glob pattern of files to consider",
}

INT_OPTIONS = {"stale_days", "older_than_days", "days", "result_size", "min_items", "depth"}
LIST_OPTIONS = {"domain", "operations", "exclude"}
HIDDEN_OPTIONS = {"now"}

ACTION_CHOICES = {
    "group-membership": ("add", "remove"),
    "set-auto-reply": ("enable", "disable"),
    "mailbox-access": ("grant", "revoke"),
    "folder-permission": ("grant", "revoke", "take-ownership", "disable-inheritance"),
}


def add_task_arguments(parser: argparse.ArgumentParser, task_cls: type[BaseTask]) -> None:
    """Derive command line flags from a task's option defaults."""
    for key, default in task_cls.defaults.items():
        if key in HIDDEN_OPTIONS:
            continue
        flag = "--" + key.replace("_", "-")
        kwargs = {"dest": key, "default": argparse.SUPPRESS, "help": OPTION_HELP.get(key)}
        if isinstance(default, bool):
            if default:
                flag = "--no-" + key.replace("_", "-")
                kwargs["action"] = "store_false"
            else:
                kwargs["action"] = "store_true"
        elif isinstance(default, list) or key in LIST_OPTIONS:
            kwargs["nargs"] = "+"
        elif isinstance(default, int) or key in INT_OPTIONS:
            kwargs["type"] = int
        if key == "action":
            kwargs["choices"] = ACTION_CHOICES[task_cls.name]
        elif key == "source":
            kwargs["choices"] = ("entra", "ad")
        parser.add_argument(flag, **kwargs)


def task_options(args: argparse.Namespace, task_cls: type[BaseTask]) -> dict:
    return {k: v for k, v in vars(args).items() if k in task_cls.defaults}


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    action = args.profile_action

    if action == "list":
        return _profile_list()
    elif action == "add":
        return _profile_add(args)
    elif action == "remove":
        return _profile_remove(args)
    elif action == "set-default":
        return _profile_set_default(args)
    print("Usage: m365-admin profile {add|list|remove|set-default}")
    return EXIT_OK


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  m365-admin profile add <name> \\")
        print("    --tenant-id <GUID> --client-id <GUID> --cert-path ./base64.txt")
        return EXIT_OK

    print(f"\n  {'Name':<20s} {'Tenant ID':<38s} {'Organization':<32s} {'AD Server':<20s} {'Default'}")
    print(f"  {'─'*20} {'─'*38} {'─'*32} {'─'*20} {'─'*7}")
    for p in profiles:
        default_marker = "  ✓" if p.name == store.default_profile else ""
        display = p.tenant_display_name or ""
        name_col = f"{p.name}" + (f" ({display})" if display else "")
        print(
            f"  {name_col:<20s} {p.tenant_id:<38s} {p.exchange_organization:<32s} "
            f"{p.ad_server:<20s}{default_marker}"
        )
    print()
    return EXIT_OK


def _profile_add(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    name = args.profile_name
    if store.get(name):
        print(f"  Profile '{name}' already exists. It will be overwritten.")

    profile = TenantProfile(
        name=name,
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        cert_path=args.cert_path or "./base64.txt",
        exchange_organization=args.organization or "",
        ad_server=args.ad_server or "",
        tenant_display_name=args.display_name or "",
        notes=args.notes or "",
    )
    set_as_default = args.set_default or not store.profiles
    store.add(profile, set_default=set_as_default)
    print(f"  ✅ Profile '{name}' saved.")
    if set_as_default:
        print("  ✅ Set as default profile.")
    return EXIT_OK


def _profile_remove(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.remove(args.profile_name):
        print(f"  ✅ Profile '{args.profile_name}' removed.")
        return EXIT_OK
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return EXIT_FAILURE


def _profile_set_default(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.set_default(args.profile_name):
        print(f"  ✅ Default profile set to '{args.profile_name}'.")
        return EXIT_OK
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return EXIT_FAILURE


# ---------------------------------------------------------------------------
# Journal history
# ---------------------------------------------------------------------------

def _cmd_history(args: argparse.Namespace) -> int:
    config = ToolkitConfig()
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    journal_path = config.output.journal_path
    if not journal_path.exists():
        print(f"No run journal at {journal_path}")
        return EXIT_OK
    journal = RunJournal(journal_path)

    if args.run_id:
        outcomes = journal.get_outcomes(args.run_id)
        if not outcomes:
            print(f"  ❌ No outcomes recorded for run '{args.run_id}'.")
            return EXIT_FAILURE
        print(f"\n  {'Target':<45s} {'Status':<10s} Detail")
        print(f"  {'─'*45} {'─'*10} {'─'*30}")
        for o in outcomes:
            print(f"  {o['target']:<45s} {o['status']:<10s} {o['detail'] or ''}")
        print()
        return EXIT_OK

    print(f"\n  {'Run ID':<26s} {'Task':<22s} {'Mode':<8s} {'Status':<10s} Started (UTC)")
    print(f"  {'─'*26} {'─'*22} {'─'*8} {'─'*10} {'─'*19}")
    for run in journal.get_run_history(args.limit):
        started = datetime.fromtimestamp(run["started_at"], timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        print(f"  {run['run_id']:<26s} {run['task']:<22s} {run['mode']:<8s} {run['status']:<10s} {started}")
    print()
    return EXIT_OK


def _cmd_permissions(args: argparse.Namespace) -> int:
    """Print the API permissions the app registration needs."""
    permissions = Authenticator.list_required_permissions()
    print(f"\n  {'Permission':<28s} Used for")
    print(f"  {'─'*28} {'─'*50}")
    for name, purpose in permissions.items():
        print(f"  {name:<28s} {purpose}")
    print("\n  Grant these as application permissions with admin consent.")
    print("  Exchange tasks also need the app assigned an Exchange administrator role.\n")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _common_parser() -> argparse.ArgumentParser:
    """Options shared by every task sub-command."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--profile", "-p",
        type=str,
        default=None,
        help="Tenant profile name to use (run 'profile list' to see available)",
    )
    common.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    common.add_argument(
        "--delegated",
        action="store_true",
        help="Use delegated (device-code) authentication instead of certificate",
    )
    common.add_argument("--tenant-id", type=str, default=None, help="Tenant ID (overrides profile)")
    common.add_argument("--client-id", type=str, default=None, help="Client ID (overrides profile)")
    common.add_argument("--cert-path", type=Path, help="Path to base64-encoded certificate file (overrides profile)")
    common.add_argument("--organization", type=str, default=None, help="Exchange organization, e.g. contoso.onmicrosoft.com")
    common.add_argument("--ad-server", type=str, default=None, help="Domain controller for Active Directory tasks")
    common.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=None,
        help="Output directory for reports (default: ./m365_admin_reports)",
    )
    common.add_argument(
        "--formats",
        nargs="+",
        choices=REPORT_FORMATS,
        default=None,
        help="Report formats to write (default: csv)",
    )
    common.add_argument("--apply", action="store_true", help="Perform changes (default is dry-run)")
    common.add_argument("--no-journal", action="store_true", help="Do not record the run in the journal")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return common


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="m365-admin",
        description="M365 and Active Directory administration toolkit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", metavar="command")

    # --- profile ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--cert-path", default="./base64.txt", help="Path to base64-encoded PFX (default: ./base64.txt)")
    add_p.add_argument("--organization", help="Exchange organization, e.g. contoso.onmicrosoft.com")
    add_p.add_argument("--ad-server", help="Domain controller for Active Directory tasks")
    add_p.add_argument("--display-name", help="Friendly tenant display name")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    # --- history ---
    hist_p = subparsers.add_parser("history", help="List recent runs from the journal")
    hist_p.add_argument("--output-dir", "-o", type=Path, default=None, help="Report directory holding the journal")
    hist_p.add_argument("--limit", type=int, default=10, help="Number of runs to list")
    hist_p.add_argument("--run-id", default=None, help="Show the per-object outcomes of one run")

    # --- permissions ---
    subparsers.add_parser("permissions", help="List the API permissions the app registration needs")

    # --- tasks ---
    common = _common_parser()
    for task_cls in ALL_TASKS:
        task_p = subparsers.add_parser(
            task_cls.name,
            parents=[common],
            help=task_cls.description + (" [changes]" if task_cls.mutating else ""),
            description=task_cls.description,
        )
        add_task_arguments(task_p, task_cls)

    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def build_config(args: argparse.Namespace) -> ToolkitConfig:
    """Build toolkit configuration from a config file, profile and CLI flags."""
    if args.config:
        if not args.config.exists():
            raise ConfigError(f"Config file not found: {args.config}")
        config = ToolkitConfig.from_file(args.config)
    else:
        config = ToolkitConfig()

    if args.delegated:
        config.auth.mode = "delegated"

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise ConfigError(f"Profile '{args.profile}' not found. Use 'profile list' to see available profiles.")
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    tenant_id = client_id = cert_path = None
    if profile:
        tenant_id = args.tenant_id or profile.tenant_id
        client_id = args.client_id or profile.client_id
        cert_path = str(args.cert_path) if args.cert_path else profile.resolve_cert_path()
        config.tasks.exchange_organization = profile.exchange_organization or config.tasks.exchange_organization
        config.tasks.ad_server = profile.ad_server or config.tasks.ad_server
    elif args.tenant_id and args.client_id:
        tenant_id = args.tenant_id
        client_id = args.client_id
        cert_path = str(args.cert_path) if args.cert_path else "./base64.txt"
    elif config.auth.certificate:
        tenant_id = config.auth.certificate.tenant_id
        client_id = config.auth.certificate.client_id
        cert_path = str(args.cert_path) if args.cert_path else config.auth.certificate.certificate_path
    elif config.auth.delegated:
        tenant_id = config.auth.delegated.tenant_id
        client_id = config.auth.delegated.client_id

    if tenant_id and client_id:
        if config.auth.mode == "delegated":
            config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)
        else:
            password = config.auth.certificate.certificate_password if config.auth.certificate else ""
            config.auth.certificate = CertificateAuth(
                tenant_id=tenant_id,
                client_id=client_id,
                certificate_path=cert_path,
                certificate_password=password,
            )

    if args.organization:
        config.tasks.exchange_organization = args.organization
    if args.ad_server:
        config.tasks.ad_server = args.ad_server
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.formats:
        config.output.formats = list(args.formats)
    if args.apply:
        config.tasks.dry_run = False
    if args.no_journal:
        config.journal_enabled = False
    if args.verbose:
        config.verbose = True
    return config


def _require_credentials(config: ToolkitConfig) -> None:
    if config.auth.mode == "delegated" and config.auth.delegated:
        return
    if config.auth.mode == "certificate" and config.auth.certificate:
        return
    raise ConfigError(
        "No tenant credentials found. Use --profile <name>, "
        "--tenant-id X --client-id Y, or --config config.json"
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def new_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Task execution
# ---------------------------------------------------------------------------

async def connect_services(
    task: BaseTask,
    context: TaskContext,
    config: ToolkitConfig,
    stack: AsyncExitStack,
    authenticator: Optional[Authenticator] = None,
) -> None:
    """Create the service clients a task needs and attach them to its context."""
    services = task.services
    if "graph" in services or "exchange" in services:
        _require_credentials(config)
        authenticator = authenticator or Authenticator(config.auth)

    def runner() -> PowerShellRunner:
        return PowerShellRunner(
            context.guard,
            executable=config.tasks.powershell_executable,
            timeout=config.tasks.powershell_timeout_seconds,
        )

    if "graph" in services:
        print("🔐 Authenticating to Microsoft Graph...")
        token = await authenticator.acquire_token()
        context.graph = await stack.enter_async_context(
            GraphClient(
                access_token=token,
                guardian=context.guard,
                page_size=config.tasks.page_size,
                max_pages=config.tasks.max_pages,
            )
        )
        print("✅ Connected to Microsoft Graph.")

    if "exchange" in services:
        organization = config.tasks.exchange_organization
        if not organization:
            raise ConfigError("Exchange tasks need --organization (e.g. contoso.onmicrosoft.com)")
        print("🔐 Authenticating to Exchange Online...")
        token = await authenticator.acquire_token(EXCHANGE_SCOPES)
        context.exchange = ExchangeClient(runner(), token, organization)
        print(f"✅ Exchange Online session ready ({organization}).")

    if "directory" in services:
        context.directory = ActiveDirectoryClient(runner(), server=config.tasks.ad_server or None)

    if "acl" in services:
        context.acl = AclClient(runner())


def print_summary(result: TaskResult, created: list[Path]) -> None:
    print("\n" + "=" * 70)
    print(f" {result.task_name.upper()} — {result.metadata.get('mode', 'REPORT')}")
    print("=" * 70)
    print(f"  Objects enumerated: {result.metadata['items_enumerated']}")
    print(f"  Objects matched:    {result.metadata['items_matched']}")
    print(f"  Report rows:        {len(result.rows)}")
    for status, count in sorted(result.status_counts.items()):
        print(f"    {status:<10s} {count}")
    for w in result.metadata["warnings"]:
        print(f"  ⚠  {w}")
    for e in result.metadata["errors"]:
        print(f"  ❌ {e}")
    for path in created:
        print(f"  📄 {path}")
    print(f"  Duration: {result.metadata['duration_seconds']}s\n")


def exit_code_for(result: TaskResult) -> int:
    if result.failed:
        return EXIT_FAILURE
    if result.has_item_errors:
        return EXIT_ITEM_ERRORS
    return EXIT_OK


async def run_task(args: argparse.Namespace) -> int:
    """Connect, run one task, write reports and the journal."""
    task_cls = TASKS_BY_NAME[args.command]
    config = build_config(args)
    configure_logging(config.verbose)

    guard = ChangeGuard(apply=not config.tasks.dry_run)
    context = TaskContext(guard=guard, config=config.tasks)
    task = task_cls(context, **task_options(args, task_cls))
    run_id = new_run_id()
    output_dir = config.output.report_dir

    if task.mutating:
        guard.print_banner()
    print(f"\n📋 Run ID: {run_id}")
    print(f"🧰 Task:   {task.name}")
    print(f"📂 Output: {output_dir.resolve()}\n")

    journal = RunJournal(config.output.journal_path) if config.journal_enabled else None
    if journal:
        journal.start_run(run_id, task.name, guard.mode if task.mutating else "REPORT", metadata=task.options)

    try:
        async with AsyncExitStack() as stack:
            await connect_services(task, context, config, stack)
            result = await task.execute()
    except (ConfigError, AuthenticationError, GraphAPIError, PowerShellError) as e:
        print(f"\n❌ {type(e).__name__}: {e}")
        if journal:
            journal.complete_run(run_id, "failed")
        return EXIT_FAILURE
    except Exception as e:
        # Network and MSAL discovery failures while connecting
        logger.debug("Connection failed", exc_info=True)
        print(f"\n❌ Could not connect: {type(e).__name__}: {e}")
        if journal:
            journal.complete_run(run_id, "failed")
        return EXIT_FAILURE

    created = export_report(result, guard.get_audit_record(), output_dir, run_id, config.output.formats)
    if journal:
        journal.record_outcomes(run_id, result.outcomes)
        journal.complete_run(run_id, "failed" if result.failed else "completed")

    print_summary(result, created)
    if task.mutating and guard.planned:
        print(f"  {len(guard.planned)} change(s) planned. Re-run with --apply to perform them.\n")
    return exit_code_for(result)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for `m365-admin` and `python -m m365_admin_toolkit`."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "profile":
            return _cmd_profile(args)
        if args.command == "history":
            return _cmd_history(args)
        if args.command == "permissions":
            return _cmd_permissions(args)
        if args.command in TASKS_BY_NAME:
            return asyncio.run(run_task(args))
    except ConfigError as e:
        print(f"\n❌ {e}")
        return EXIT_FAILURE

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
