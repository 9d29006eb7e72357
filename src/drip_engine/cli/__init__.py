"""Drip CLI - command-line interface for campaign and rule definitions."""

from .main import app

__all__ = ["app"]
