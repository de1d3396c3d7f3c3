"""Agor Unix integration.

Per-user Unix accounts, worktree groups and home-directory symlinks,
with every privileged mutation routed through a small audited helper.
"""

__version__ = "0.1.0"
