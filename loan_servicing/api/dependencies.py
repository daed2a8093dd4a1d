"""
Shared service dependencies for the API routers
"""

from typing import Optional

from fastapi import Depends

from ..config import ServicingConfig, get_config
from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..events import EventDispatcher
from ..servicing import LoanServicingService


class ServicingSystem:
    """Servicing engine with storage, audit trail and event dispatcher wired together"""

    def __init__(self, config: Optional[ServicingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.dispatcher = EventDispatcher()
        self.service = LoanServicingService(
            self.storage, self.config, audit_trail=self.audit_trail, dispatcher=self.dispatcher
        )


# Global servicing system instance, built on first request
_servicing_system: Optional[ServicingSystem] = None


def get_servicing_system() -> ServicingSystem:
    global _servicing_system
    if _servicing_system is None:
        _servicing_system = ServicingSystem()
    return _servicing_system


def get_service(system: ServicingSystem = Depends(get_servicing_system)) -> LoanServicingService:
    return system.service
