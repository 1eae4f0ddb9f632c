"""
System container and request dependencies
"""

from typing import Optional

from fastapi import Header, HTTPException

from ..audit import AuditTrail
from ..config import get_config
from ..errors import LendingError
from ..events import EventDispatcher
from ..roles import Role
from ..scheduler import OverdueSweepScheduler
from ..servicing import LoanServicingEngine
from ..storage import InMemoryStorage, SQLiteStorage


class LendingSystem:
    """Loan servicing system with all components initialized"""

    def __init__(self, use_sqlite: Optional[bool] = None):
        config = get_config()
        if use_sqlite is None:
            use_sqlite = config.storage_backend == "sqlite"

        # Initialize storage
        if use_sqlite:
            self.storage = SQLiteStorage(config.sqlite_path)
        else:
            self.storage = InMemoryStorage()

        self.audit_trail = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.engine = LoanServicingEngine(self.storage, self.audit_trail, self.dispatcher)
        self.scheduler = OverdueSweepScheduler(self.engine)


lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Get the global lending system, creating it on first use"""
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system


def get_actor_role(x_actor_role: Optional[str] = Header(None)) -> Optional[Role]:
    """Role of the caller, taken from the X-Actor-Role header (id or name)"""
    if x_actor_role is None or x_actor_role == "":
        return None
    try:
        return Role.parse(x_actor_role)
    except LendingError as e:
        raise to_http_error(e)


def to_http_error(error: LendingError) -> HTTPException:
    """Map a domain error onto its HTTP status"""
    return HTTPException(status_code=error.status, detail=error.to_dict())
