"""Centralized WordPress cron runner."""

__version__ = "0.1.0"
