"""
Base task class — shared shape of every admin command:
enumerate objects, filter them, then report or mutate each one.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from ..config import TaskConfig
from ..directory.ad_client import ActiveDirectoryClient
from ..exchange.client import ExchangeClient
from ..filesystem.acl import AclClient
from ..filters import dedupe, load_identities
from ..graph.client import GraphClient
from ..safety.guardian import ChangeGuard

logger = logging.getLogger("m365_admin_toolkit.tasks")

STATUS_SUCCESS = "Success"
STATUS_PLANNED = "Planned"
STATUS_SKIPPED = "Skipped"
STATUS_ERROR = "Error"

OUTCOME_COLUMNS = ["Status", "Detail"]


class TaskResult:
    """Rows and run metadata produced by a task."""

    def __init__(self, task_name: str, columns: list[str], mutating: bool = False):
        self.task_name = task_name
        self.columns = list(columns)
        self.mutating = mutating
        self.rows: list[dict[str, Any]] = []
        self.outcomes: list[tuple[str, str, str]] = []
        self.status_counts: Counter = Counter()
        self.metadata: dict[str, Any] = {
            "task": task_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "items_enumerated": 0,
            "items_matched": 0,
            "errors": [],
            "warnings": [],
            "fatal": False,
        }

    def add_row(self, row: dict[str, Any]):
        self.rows.append(row)

    def add_outcome(self, target: str, status: str, detail: str = "", **fields):
        """Record the result of acting on one item, as a report row and journal entry."""
        self.rows.append({**fields, "Status": status, "Detail": detail})
        self.outcomes.append((target, status, detail))
        self.status_counts[status] += 1

    def add_item_error(self, target: str, error: str, **fields):
        """An item failed; for mutation tasks this becomes an Error row."""
        self.metadata["errors"].append(f"{target}: {error}")
        logger.error(f"[{self.task_name}] {target}: {error}")
        if self.mutating:
            self.add_outcome(target, STATUS_ERROR, error, **fields)
        else:
            self.outcomes.append((target, STATUS_ERROR, error))
            self.status_counts[STATUS_ERROR] += 1

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.error(f"[{self.task_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.task_name}] {warning}")

    @property
    def failed(self) -> bool:
        """The task could not run at all (enumeration/connection failure)."""
        return self.metadata["fatal"]

    @property
    def has_item_errors(self) -> bool:
        return self.status_counts[STATUS_ERROR] > 0

    def to_dict(self) -> dict:
        return {
            "rows": self.rows,
            "metadata": {**self.metadata, "status_counts": dict(self.status_counts)},
        }


@dataclass
class TaskContext:
    """Service clients and settings handed to a task. Unused services stay None."""
    guard: ChangeGuard
    config: TaskConfig
    graph: Optional[GraphClient] = None
    exchange: Optional[ExchangeClient] = None
    directory: Optional[ActiveDirectoryClient] = None
    acl: Optional[AclClient] = None


class BaseTask(ABC):
    """
    Abstract base class for all tasks.

    Subclasses implement run() to enumerate, filter and act.
    The base class provides:
      - Timing and metadata
      - Fatal error capture (connection/enumeration failures)
      - Per-item processing that records failures and continues
    """

    name: str = "base"
    description: str = "Base task"
    columns: list[str] = []
    services: tuple[str, ...] = ()
    mutating: bool = False
    defaults: dict[str, Any] = {}

    def __init__(self, context: TaskContext, **options):
        self.context = context
        unknown = set(options) - set(self.defaults)
        if unknown:
            raise TypeError(f"{self.name}: unknown options {sorted(unknown)}")
        self.options = {**self.defaults, **options}

    def opt(self, key: str) -> Any:
        return self.options[key]

    @property
    def graph(self) -> GraphClient:
        return self._service("graph")

    @property
    def exchange(self) -> ExchangeClient:
        return self._service("exchange")

    @property
    def directory(self) -> ActiveDirectoryClient:
        return self._service("directory")

    @property
    def acl(self) -> AclClient:
        return self._service("acl")

    @property
    def guard(self) -> ChangeGuard:
        return self.context.guard

    def _service(self, name: str):
        client = getattr(self.context, name)
        if client is None:
            raise RuntimeError(f"Task '{self.name}' needs the {name} service, which is not connected")
        return client

    def result_columns(self) -> list[str]:
        return self.columns + (OUTCOME_COLUMNS if self.mutating else [])

    def targets(self) -> list[str]:
        """Identities from --identity values plus an --identities-file."""
        values = list(self.options.get("identity") or [])
        path = self.options.get("identities_file")
        if path:
            values.extend(load_identities(path))
        return dedupe(values)

    async def execute(self) -> TaskResult:
        """
        Execute the task with timing and error handling.
        """
        result = TaskResult(self.name, self.result_columns(), mutating=self.mutating)
        result.metadata["started_at"] = time.time()
        result.metadata["mode"] = self.guard.mode if self.mutating else "REPORT"
        logger.info(f"[{self.name}] Starting...")

        try:
            await self.run(result)
        except Exception as e:
            result.metadata["fatal"] = True
            result.add_error(f"Task failed: {type(e).__name__}: {e}")
            logger.exception(f"[{self.name}] Task failed")

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        logger.info(
            f"[{self.name}] Completed in {result.metadata['duration_seconds']}s — "
            f"{len(result.rows)} rows"
        )
        return result

    @abstractmethod
    async def run(self, result: TaskResult):
        """
        Implement enumerate -> filter -> act.
        Add rows via result.add_row() or result.add_outcome().
        """
        raise NotImplementedError

    async def for_each(
        self,
        items: Iterable[Any],
        result: TaskResult,
        action: Callable[[Any, TaskResult], Awaitable[None]],
        target_of: Callable[[Any], str] = str,
    ):
        """
        Run action on every item in order. A failing item is recorded
        and processing continues with the next one.
        """
        for item in items:
            result.metadata["items_matched"] += 1
            target = target_of(item)
            try:
                await action(item, result)
            except Exception as e:
                result.add_item_error(target, f"{type(e).__name__}: {e}", **self.error_fields(item))

    def error_fields(self, item: Any) -> dict:
        """Row fields to fill on an Error row for item."""
        return {}

    @staticmethod
    def applied_status(executed: bool) -> str:
        return STATUS_SUCCESS if executed else STATUS_PLANNED
