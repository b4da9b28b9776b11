"""Console command handlers."""

from .base import CommandHandler, command

__all__ = ["CommandHandler", "command"]
