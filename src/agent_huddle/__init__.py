"""Slack persona huddle: trigger routing and multi-agent deliberation."""

from agent_huddle._version import __version__

__all__ = ["__version__"]
