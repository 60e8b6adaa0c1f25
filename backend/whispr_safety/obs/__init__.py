"""Observability package bootstrap."""

from __future__ import annotations

from whispr_safety.obs import logging as obs_logging
from whispr_safety.settings import settings

_initialised = False


def init() -> None:
	global _initialised
	if _initialised:
		return
	obs_logging.configure_logging()
	obs_logging.get_logger().info("observability initialised", extra={"log_level": settings.obs_log_level})
	_initialised = True


__all__ = ["init"]
