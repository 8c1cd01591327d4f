"""Agent Queue CLI: command-line queue operations."""

from agentqueue_cli.main import CLIError, app, tail_streams

__all__ = [
    "CLIError",
    "app",
    "tail_streams",
]
