"""Postify: per-tenant Telegram bot supervision and scheduled channel posting."""

__version__ = "0.4.0"
