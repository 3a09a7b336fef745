"""
PowerShell runner — executes cmdlets via a `pwsh` subprocess and parses JSON output.

Used for the services that have no Graph surface: Exchange Online cmdlets,
the ActiveDirectory module and NTFS ACL cmdlets. Each call runs one
self-contained script (connect, commands, disconnect).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any, Optional

from ..config import POWERSHELL_EXECUTABLE, POWERSHELL_TIMEOUT_SECONDS
from ..safety.guardian import ChangeGuard

logger = logging.getLogger("m365_admin_toolkit.powershell")

# Bearer tokens must never reach the log
_TOKEN_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]{5,}\.[A-Za-z0-9_-]{5,}\.[A-Za-z0-9_-]*")


class PowerShellError(Exception):
    """Raised when a PowerShell script fails to run or reports an error."""
    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)


def ps_quote(value: Any) -> str:
    """Return value as a single-quoted PowerShell string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_array(values) -> str:
    """Return a PowerShell array literal of quoted strings."""
    return "@(" + ",".join(ps_quote(v) for v in values) + ")"


def mask_secrets(text: str) -> str:
    return _TOKEN_PATTERN.sub("***TOKEN-MASKED***", text)


def parse_json_output(output: str) -> Any:
    """
    Parse ConvertTo-Json output. Module banners may precede the payload,
    so fall back to the first '{' or '['.
    """
    output = output.strip()
    if not output:
        return None
    try:
        return json.loads(output)
    except json.JSONDecodeError:
        starts = [i for i in (output.find("{"), output.find("[")) if i != -1]
        if starts:
            try:
                return json.loads(output[min(starts):])
            except json.JSONDecodeError:
                pass
    raise PowerShellError(f"Could not parse PowerShell JSON output: {output[:200]}")


def as_list(data: Any) -> list:
    """ConvertTo-Json emits a bare object for one result; normalize to a list."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


class PowerShellRunner:
    """
    Runs PowerShell scripts through a subprocess.

    Mutating scripts are checked with the ChangeGuard first; in dry-run
    mode they are not executed and run() returns None.
    """

    def __init__(
        self,
        guardian: ChangeGuard,
        executable: str = POWERSHELL_EXECUTABLE,
        timeout: float = POWERSHELL_TIMEOUT_SECONDS,
        preamble: Optional[list[str]] = None,
        epilogue: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.guardian = guardian
        self.executable = executable
        self.timeout = timeout
        self.preamble = preamble or []
        self.epilogue = epilogue or []
        # Extra environment for the child; secrets go here, never on the command line
        self.env = env or {}
        self._script_count = 0

    def build_script(self, commands: list[str]) -> str:
        return "; ".join(
            ["$ErrorActionPreference = 'Stop'", *self.preamble, *commands, *self.epilogue]
        )

    async def run(self, commands: list[str], parse_json: bool = True) -> Any:
        """
        Run commands and return parsed JSON (or raw text with parse_json=False).
        Returns None if the guard kept a mutating script from running.
        """
        if not self.guardian.validate_command("; ".join(commands)):
            return None

        script = self.build_script(commands)
        logger.debug(f"Running PowerShell: {mask_secrets(script)[:300]}")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable, "-NoProfile", "-NonInteractive", "-Command", script,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env} if self.env else None,
            )
        except FileNotFoundError:
            raise PowerShellError(
                f"PowerShell ({self.executable}) not found. Install PowerShell 7+."
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise PowerShellError(f"PowerShell script timed out after {self.timeout}s")

        self._script_count += 1
        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace").strip()

        if proc.returncode != 0:
            message = mask_secrets(err_text.splitlines()[-1] if err_text else "unknown error")
            raise PowerShellError(
                f"PowerShell exited with {proc.returncode}: {message}",
                stderr=mask_secrets(err_text),
                returncode=proc.returncode,
            )
        if err_text:
            logger.debug(f"PowerShell stderr: {mask_secrets(err_text)[:300]}")

        if parse_json:
            return parse_json_output(out_text)
        return out_text.strip()

    async def run_list(self, commands: list[str]) -> list:
        """Run commands and always return a list of result objects."""
        return as_list(await self.run(commands))

    def get_stats(self) -> dict:
        return {"scripts_run": self._script_count}
