"""Bundled teams.

Each module defines ``CODER`` and ``REVIEWER`` prompt builders and is
loaded by file path through :class:`tandem.teams.TeamRegistry`.
"""
