"""Database layer - engine, base classes and column types."""

from smefin_kernel.db.base import (
    UUID,
    Base,
    OrganizationScoped,
    TrackedBase,
    UTCDateTime,
    UUIDString,
)
from smefin_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "OrganizationScoped",
    "UUIDString",
    "UTCDateTime",
    "UUID",
]
