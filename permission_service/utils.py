"""
Logging helpers shared by every module.

Usage:
    from permission_service.utils import get_logger

    log = get_logger(__name__)
    log.info("Granted role %s to %s", role_id, user_id)
"""
import logging

from permission_service.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger("permission_service")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the ``permission_service`` hierarchy."""
    _configure_root()
    if not name.startswith("permission_service"):
        name = f"permission_service.{name}"
    return logging.getLogger(name)
