"""API routes"""

from syncbridge.api import organizations, stats, sync, webhooks

__all__ = ["organizations", "sync", "stats", "webhooks"]
