"""Notification stores, relations, entity sets and trend materializations for a Minerva database."""

__version__ = "0.1.0"