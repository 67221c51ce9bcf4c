"""
gatekeeper: embeddable identity, authorization and audit core.
"""

from .config import GatekeeperConfig, load_config
from .core import SecurityCore
from .errors import SecurityError
from .events import EventBus
from .logging_setup import setup_logging
from .audit import AuditLogger
from .auth import IdentityManager, PermissionGuard

__version__ = "1.0.0"

__all__ = [
    "AuditLogger",
    "EventBus",
    "GatekeeperConfig",
    "IdentityManager",
    "PermissionGuard",
    "SecurityCore",
    "SecurityError",
    "load_config",
    "setup_logging",
]
