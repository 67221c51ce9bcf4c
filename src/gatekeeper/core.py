"""
Explicit wiring of the gatekeeper services.

SecurityCore builds one EventBus, AuditLogger, PermissionGuard and
IdentityManager from a GatekeeperConfig, connects the audit listener to the
bus, and owns the background timers. Nothing here is global: construct as
many isolated cores as needed.
"""

from typing import Optional

from loguru import logger

from .audit import AuditEventListener, AuditLogger
from .auth.identity import IdentityManager
from .auth.permissions import PermissionGuard
from .auth.providers import LocalAuthProvider
from .config import GatekeeperConfig
from .events import EventBus
from .scheduler import Scheduler


class SecurityCore:
    """
    Container for the identity, authorization and audit services.

    Usage:
        core = SecurityCore(load_config("gatekeeper.yaml"))
        core.start()
        token = core.identity.authenticate("alice", "secret")
        ...
        core.stop()

    Also usable as a context manager.
    """

    def __init__(self, config: Optional[GatekeeperConfig] = None):
        self.config = config or GatekeeperConfig()

        self.events = EventBus()
        self.audit = AuditLogger.from_config(
            self.config.audit,
            purge_interval_seconds=self.config.maintenance.purge_interval_seconds,
        )
        self.audit_listener = AuditEventListener(self.audit)
        self.audit_listener.attach(self.events)

        self.guard = PermissionGuard.from_config(
            self.config.guard,
            pattern_retention_hours=self.config.maintenance.access_pattern_retention_hours,
            events=self.events,
        )
        self.identity = IdentityManager.from_config(self.config, guard=self.guard, events=self.events)
        self.local_provider = LocalAuthProvider(self.identity)

        self.scheduler = Scheduler()
        self.scheduler.register(
            "identity-maintenance",
            self.identity.run_maintenance,
            self.config.maintenance.cleanup_interval_seconds,
        )

    def start(self) -> None:
        """Start the maintenance timer and the audit flush/purge timers."""
        self.scheduler.start()
        self.audit.start()
        logger.info("Security core started")

    def stop(self) -> None:
        """Stop all timers and flush pending audit events."""
        self.scheduler.stop()
        self.audit.close()
        logger.info("Security core stopped")

    def __enter__(self) -> "SecurityCore":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
