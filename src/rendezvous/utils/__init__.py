"""Shared utilities."""

from rendezvous.utils.logging import log_event, setup_logging

__all__ = ["log_event", "setup_logging"]
