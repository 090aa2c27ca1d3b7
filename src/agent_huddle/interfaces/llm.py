"""Abstract interface for AI completion integrations."""

from typing import Protocol

from ..models.persona import AgentPersona


class CompletionProvider(Protocol):
    """Runs a single prompt and returns the model's text.

    Prompt construction lives in the core; adapters only execute it.
    """

    async def complete(
        self,
        prompt: str,
        *,
        persona: AgentPersona | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """
        Run one completion.

        Security: adapters MUST redact secrets from the prompt before it
        leaves the process.

        Args:
            prompt: User-turn content
            persona: Persona to speak as; adapters derive a system prompt
                from name, role and expertise when ``system`` is omitted
            system: Explicit system prompt
            max_tokens: Override the configured token limit

        Returns:
            The model's text output, stripped

        Raises:
            CompletionError: If the request fails
            RateLimitError: If rate limited
            TimeoutError: If the request times out
        """
        ...
