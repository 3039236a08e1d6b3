"""
Unimem CLI - Command Line Interface for the Unimem memory engine

Provides terminal commands for:
- Creating, inspecting and listing entities
- Context-aware search and related entities
- Running consolidation
- Syncing with a server and resolving conflicts
"""

from .main import cli

__all__ = ["cli"]
