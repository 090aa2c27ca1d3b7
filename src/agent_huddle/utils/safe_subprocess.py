"""Safe subprocess helpers for the gh CLI and the job CLI.

- Never uses shell=True; arguments are always passed as a list
- Validates owner/repo before it reaches a ``gh api`` path
- Enforces timeouts on every short-lived command
"""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from agent_huddle.utils.security import SecurityError, validate_repo_name

log = structlog.get_logger()


class GHCliError(Exception):
    """Base exception for gh CLI errors."""


class NotFoundError(GHCliError):
    """Raised when an issue, PR or repository does not exist."""


class AuthenticationError(GHCliError):
    """Raised when gh CLI authentication fails."""


class CommandTimeoutError(GHCliError):
    """Raised when a command times out."""


@dataclass
class CommandResult:
    """Result of a command execution."""

    stdout: str
    stderr: str
    return_code: int
    command: list[str]

    @property
    def success(self) -> bool:
        return self.return_code == 0

    def json(self) -> Any:
        """Parse stdout as JSON.

        Raises:
            ValueError: If stdout is not valid JSON.
        """
        return json.loads(self.stdout)


async def run_command(
    cmd: list[str],
    *,
    cwd: Path | str | None = None,
    timeout: float = 30,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a short-lived command to completion in a worker thread.

    Args:
        cmd: Full argument vector, executable first.
        cwd: Working directory for the command.
        timeout: Timeout in seconds.
        env: Complete environment for the child, or None to inherit.

    Returns:
        CommandResult with stdout, stderr and return code.

    Raises:
        CommandTimeoutError: If the command does not finish in time.
        OSError: If the executable cannot be started.
    """
    log.debug("executing_command", command=cmd, cwd=str(cwd) if cwd else None, timeout=timeout)

    def run_sync() -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=env,
            shell=False,
        )

    try:
        proc = await asyncio.wait_for(asyncio.to_thread(run_sync), timeout=timeout + 5)
    except (subprocess.TimeoutExpired, TimeoutError) as e:
        log.error("command_timeout", command=cmd, timeout=timeout)
        raise CommandTimeoutError(f"Command timed out after {timeout}s: {cmd}") from e

    return CommandResult(
        stdout=proc.stdout,
        stderr=proc.stderr,
        return_code=proc.returncode,
        command=cmd,
    )


class SafeGHCli:
    """Narrow wrapper around the GitHub CLI (gh) for issues and PRs.

    Example:
        gh = SafeGHCli()
        issue = (await gh.get_issue("owner/repo", 42)).json()
    """

    DEFAULT_TIMEOUT = 15

    ISSUE_FIELDS = "number,title,body,state,labels,url"
    PR_FIELDS = "number,title,body,state,headRefName,baseRefName,url,mergeable"

    def __init__(
        self,
        gh_path: str | None = None,
        default_timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the wrapper.

        Raises:
            GHCliError: If gh CLI is not found.
        """
        resolved_path = gh_path or shutil.which("gh")
        if not resolved_path:
            raise GHCliError("gh CLI not found. Please install it from https://cli.github.com")

        self._gh_path: str = resolved_path
        self._default_timeout = default_timeout

    def _validate_repo(self, repo: str) -> None:
        if not validate_repo_name(repo):
            log.warning("invalid_repo_name_rejected", repo=repo)
            raise SecurityError(f"Invalid repository name: {repo}")

    def _parse_error(self, result: CommandResult) -> GHCliError:
        detail = result.stderr or result.stdout
        combined = detail.lower()

        if "authentication" in combined or "not logged in" in combined:
            return AuthenticationError(f"Authentication failed: {detail}")
        if "not found" in combined or "could not resolve" in combined:
            return NotFoundError(f"Resource not found: {detail}")
        return GHCliError(f"Command failed: {detail}")

    async def _run(
        self,
        args: list[str],
        cwd: Path | str | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        result = await run_command(
            [self._gh_path, *args],
            cwd=cwd,
            timeout=timeout or self._default_timeout,
        )
        if not result.success:
            raise self._parse_error(result)
        return result

    async def get_issue(self, repo: str, number: int | str) -> CommandResult:
        """Fetch one issue as JSON.

        Raises:
            SecurityError: If repo name is invalid.
            GHCliError: If the command fails.
        """
        self._validate_repo(repo)
        return await self._run(
            ["issue", "view", str(int(number)), "--repo", repo, "--json", self.ISSUE_FIELDS]
        )

    async def get_pull_request(self, repo: str, number: int | str) -> CommandResult:
        """Fetch one pull request as JSON.

        Raises:
            SecurityError: If repo name is invalid.
            GHCliError: If the command fails.
        """
        self._validate_repo(repo)
        return await self._run(
            ["pr", "view", str(int(number)), "--repo", repo, "--json", self.PR_FIELDS]
        )

    async def get_pr_diff(self, number: int | str, cwd: Path | str) -> str:
        """Return the unified diff of a PR, resolved against the repo at ``cwd``."""
        result = await self._run(["pr", "diff", str(int(number)), "--color=never"], cwd=cwd)
        return result.stdout

    async def close_issue(self, repo: str, number: int | str) -> None:
        """Close an issue.

        Raises:
            SecurityError: If repo name is invalid.
            GHCliError: If the command fails.
        """
        self._validate_repo(repo)
        await self._run(["issue", "close", str(int(number)), "--repo", repo])
