"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from m365_admin_toolkit.config import TaskConfig
from m365_admin_toolkit.exchange.client import Mailbox
from m365_admin_toolkit.safety.guardian import ChangeGuard
from m365_admin_toolkit.tasks import TaskContext

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def dry_run_guard():
    return ChangeGuard(apply=False)


@pytest.fixture
def apply_guard():
    return ChangeGuard(apply=True)


@pytest.fixture
def make_context():
    """Build a TaskContext around fake service clients."""
    def _make(guard=None, **services):
        return TaskContext(guard=guard or ChangeGuard(), config=TaskConfig(), **services)
    return _make


@pytest.fixture
def fake_exchange():
    exchange = MagicMock()
    for name in (
        "get_mailboxes", "get_mailbox", "set_mailbox_type",
        "get_mailbox_permissions", "get_recipient_permissions",
        "add_mailbox_permission", "remove_mailbox_permission",
        "get_folder_statistics", "search_unified_audit_log",
    ):
        setattr(exchange, name, AsyncMock())
    return exchange


@pytest.fixture
def fake_directory():
    directory = MagicMock()
    for name in (
        "get_users", "get_group_members",
        "add_group_member", "remove_group_member", "disable_account", "move_object",
    ):
        setattr(directory, name, AsyncMock())
    return directory


def mailbox(upn, kind="UserMailbox", disabled=False):
    return Mailbox(
        display_name=upn.split("@")[0].title(),
        user_principal_name=upn,
        primary_smtp_address=upn,
        recipient_type_details=kind,
        account_disabled=disabled,
    )
