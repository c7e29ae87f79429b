"""Conduit - a uniform execution layer over AI coding-agent CLIs.

This package locates and launches backend tools (Codex, Claude Code,
Cursor Agent, OpenCode), streams their line-delimited JSON output and
normalizes it into one typed message protocol.
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
