"""Presence record exports."""

from .manager import PresenceManager  # noqa: F401
