"""Moderation package integration helpers exposed to the application."""

from whispr_safety.moderation.domain.container import configure, configure_redis

__all__ = ["configure", "configure_redis"]
