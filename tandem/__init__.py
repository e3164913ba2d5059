"""Tandem - coder/reviewer agent orchestration.

Runs an AI coding agent and an AI reviewer in turns inside an isolated git
worktree until the reviewer opens a pull request or the review budget runs out.
"""

__version__ = "0.1.0"
