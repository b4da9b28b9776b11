"""Cluster link interactive console.

Re-exports the public console entry points
(e.g. ``from clusterlink.console import run``).
"""

from .processor import CommandProcessor
from .main import command_loop, main, run

__all__ = [
    "CommandProcessor",
    "command_loop",
    "main",
    "run",
]
