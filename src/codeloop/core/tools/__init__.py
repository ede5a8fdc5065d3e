"""Toolkit descriptors for codeloop tools."""

from .diagnostics import diagnostics_toolkit
from .files import files_toolkit
from .search import search_toolkit
from .terminal import terminal_toolkit
from .web import web_toolkit

DEFAULT_TOOLKIT_FACTORIES = [
    files_toolkit,
    search_toolkit,
    terminal_toolkit,
    diagnostics_toolkit,
    web_toolkit,
]

__all__ = ["DEFAULT_TOOLKIT_FACTORIES"]
