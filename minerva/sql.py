"""Small helpers for composing SQL text."""

from __future__ import annotations


def escape_identifier(name: str) -> str:
    """Quote ``name`` as a PostgreSQL identifier, doubling embedded quotes."""
    return '"' + name.replace('"', '""') + '"'