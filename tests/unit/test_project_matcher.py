"""Tests for the model-assisted project matcher."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from agent_huddle.core.project_matcher import SYSTEM_PROMPT, match_project_to_message
from agent_huddle.models.persona import Project
from agent_huddle.utils.async_helpers import CompletionError


class TestMatchProject:
    @pytest.mark.asyncio
    async def test_no_projects(self, mock_llm: AsyncMock) -> None:
        assert await match_project_to_message(mock_llm, "run it", []) is None
        mock_llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_project_needs_no_model(
        self, mock_llm: AsyncMock, project: Project
    ) -> None:
        assert await match_project_to_message(mock_llm, "run it", [project]) == project
        mock_llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_model_answer(
        self, mock_llm: AsyncMock, project: Project, other_project: Project
    ) -> None:
        mock_llm.complete.return_value = "Billing-API\n"

        result = await match_project_to_message(
            mock_llm, "invoices are failing", [project, other_project]
        )

        assert result == other_project
        prompt = mock_llm.complete.await_args.args[0]
        assert "- night-watch-cli\n- billing-api" in prompt
        assert mock_llm.complete.await_args.kwargs["system"] == SYSTEM_PROMPT

    @pytest.mark.parametrize("answer", ["none", "", "payments-service"])
    @pytest.mark.asyncio
    async def test_no_match(
        self, mock_llm: AsyncMock, project: Project, other_project: Project, answer: str
    ) -> None:
        mock_llm.complete.return_value = answer
        assert await match_project_to_message(mock_llm, "hm", [project, other_project]) is None

    @pytest.mark.asyncio
    async def test_model_error(
        self, mock_llm: AsyncMock, project: Project, other_project: Project
    ) -> None:
        mock_llm.complete.side_effect = CompletionError("down")
        assert await match_project_to_message(mock_llm, "hm", [project, other_project]) is None
