"""Fetch external context (issues, PRs, diffs, linked pages) for prompts.

Every public method degrades to an empty string: missing context makes a
reply less specific, it never blocks one.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import TYPE_CHECKING

import httpx
import structlog

from agent_huddle.core.prompts import has_concrete_code_context
from agent_huddle.models.discussion import Trigger, TriggerType
from agent_huddle.utils.safe_subprocess import GHCliError
from agent_huddle.utils.security import SecurityError

if TYPE_CHECKING:
    from agent_huddle.utils.safe_subprocess import SafeGHCli

log = structlog.get_logger()

GITHUB_REF_PATTERN = re.compile(r"github\.com/([^/\s]+)/([^/\s]+)/(issues|pull)/(\d+)", re.IGNORECASE)
TITLE_PATTERN = re.compile(r"<title[^>]*>([^<]{1,200})</title>", re.IGNORECASE)
META_DESCRIPTION_PATTERNS = (
    re.compile(
        r"<meta[^>]*name=[\"']description[\"'][^>]*content=[\"']([^\"']{1,300})[\"']",
        re.IGNORECASE,
    ),
    re.compile(
        r"<meta[^>]*content=[\"']([^\"']{1,300})[\"'][^>]*name=[\"']description[\"']",
        re.IGNORECASE,
    ),
)

MAX_GITHUB_REFS = 5
MAX_URL_SUMMARIES = 4
BODY_CHAR_LIMIT = 1200
DIFF_LINE_LIMIT = 160
TRIGGER_CONTEXT_LIMIT = 5000
USER_AGENT = "Mozilla/5.0 (compatible; agent-huddle/1.0)"


class ContextFetcher:
    """Collects issue/PR bodies, diffs and page summaries.

    Args:
        gh: gh CLI wrapper, or None when gh is unavailable
        http_client: Client for linked pages; one is created when omitted
        url_timeout: Per-request timeout for linked pages, in seconds
    """

    def __init__(
        self,
        gh: SafeGHCli | None,
        http_client: httpx.AsyncClient | None = None,
        url_timeout: float = 5.0,
    ) -> None:
        self._gh = gh
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=url_timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def fetch_issue_context(self, owner: str, repo: str, number: str | int) -> str:
        """Title, state, labels and body of one issue."""
        return await self._fetch_ref(owner, repo, "issues", str(number))

    async def fetch_github_context(self, urls: list[str]) -> str:
        """Summaries of the GitHub issues and PRs linked in a message."""
        parts: list[str] = []
        for url in urls[:MAX_GITHUB_REFS]:
            match = GITHUB_REF_PATTERN.search(url)
            if not match:
                continue
            owner, repo, kind, number = match.groups()
            summary = await self._fetch_ref(owner, repo, kind.lower(), number)
            if summary:
                parts.append(summary)
        return "\n\n---\n\n".join(parts)

    async def _fetch_ref(self, owner: str, repo: str, kind: str, number: str) -> str:
        if self._gh is None:
            return ""

        full_name = f"{owner}/{repo}"
        try:
            if kind == "pull":
                result = await self._gh.get_pull_request(full_name, number)
            else:
                result = await self._gh.get_issue(full_name, number)
            data = result.json()
        except (GHCliError, SecurityError, ValueError, OSError) as e:
            log.debug("github_context_unavailable", ref=f"{full_name}#{number}", error=str(e))
            return ""
        if not isinstance(data, dict):
            log.debug("github_context_unexpected_shape", ref=f"{full_name}#{number}")
            return ""

        labels = [
            label.get("name", "") for label in data.get("labels") or [] if isinstance(label, dict)
        ]
        label_str = f" [{', '.join(labels)}]" if labels else ""
        body = (data.get("body") or "").strip()[:BODY_CHAR_LIMIT]
        label = "PR" if kind == "pull" else "Issue"
        title = data.get("title", "")
        state = str(data.get("state", "")).lower()
        return f"GitHub {label} #{number}{label_str}: {title} ({state})\n{body}"

    async def fetch_url_summaries(self, urls: list[str]) -> str:
        """Title and meta description of each linked page."""
        parts: list[str] = []
        for url in urls[:MAX_URL_SUMMARIES]:
            try:
                response = await self._http.get(url)
            except httpx.HTTPError as e:
                log.debug("url_summary_failed", url=url, error=str(e))
                continue
            if not response.is_success:
                continue

            html = response.text
            title_match = TITLE_PATTERN.search(html)
            desc_match = next(
                (m for m in (p.search(html) for p in META_DESCRIPTION_PATTERNS) if m), None
            )
            title = title_match.group(1).strip() if title_match else ""
            desc = desc_match.group(1).strip() if desc_match else ""
            if not title and not desc:
                continue

            lines = [f"Link: {url}"]
            if title:
                lines.append(f"Title: {title}")
            if desc:
                lines.append(f"Summary: {desc}")
            parts.append("\n".join(lines))
        return "\n\n".join(parts)

    async def fetch_pr_diff_excerpt(self, project_path: str, ref: str) -> str:
        """First lines of a PR diff as a fenced block, or ''."""
        if self._gh is None or not ref.isdigit():
            return ""
        try:
            diff = await self._gh.get_pr_diff(ref, cwd=project_path)
        except (GHCliError, OSError) as e:
            log.debug("pr_diff_unavailable", pr=ref, error=str(e))
            return ""

        excerpt = "\n".join(diff.splitlines()[:DIFF_LINE_LIMIT]).strip()
        if not excerpt:
            return ""
        return f"PR diff excerpt (first {DIFF_LINE_LIMIT} lines):\n```diff\n{excerpt}\n```"

    async def enrich_trigger(self, trigger: Trigger) -> Trigger:
        """Attach a diff excerpt to PR reviews that arrive without code."""
        if trigger.type != TriggerType.PR_REVIEW or has_concrete_code_context(trigger.context):
            return trigger

        excerpt = await self.fetch_pr_diff_excerpt(trigger.project_path, trigger.ref)
        if not excerpt:
            return trigger
        context = f"{trigger.context}\n\n{excerpt}"[:TRIGGER_CONTEXT_LIMIT]
        return replace(trigger, context=context)
