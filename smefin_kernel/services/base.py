"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session contract for every write-side service.
    Services persist with ``session.flush()`` and never commit or roll back;
    the caller (``session_scope`` or a test fixture) owns the transaction.

Architecture position:
    Kernel > Services -- imperative shell around the pure engines in
    ``smefin_engines``.

Failure modes:
    - A subclass that calls ``session.commit()`` breaks the atomicity of
      multi-step operations such as submit-for-approval.
"""

from abc import ABC

from sqlalchemy.orm import Session

from smefin_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Args:
        session: SQLAlchemy session for database operations.
        clock: Time source.  Defaults to ``SystemClock``; tests inject a
            ``DeterministicClock``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
