"""Workspace tools: file operations, serialized shell commands and dispatch."""

from .command_queue import CommandExecution, CommandSerializer
from .dispatcher import ToolDispatcher
from .files import FileManager

__all__ = [
    "CommandExecution",
    "CommandSerializer",
    "FileManager",
    "ToolDispatcher",
]
