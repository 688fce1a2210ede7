"""
Module: fieldservice_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors. The
    reporting and UI collaborators read audit timelines and invoice balances
    through these, never through services.
Architecture position: Kernel > Selectors. May import from db/, models/ and
    domain/. MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors never add, delete, flush or commit.
    - DTO return convention: frozen dataclasses, not ORM instances.
    - Tenant scope: every query filters on the tenant bound to the caller's
      session, in addition to the session-level isolation criteria.

Failure modes:
    - TenantIsolationError when the session has no tenant bound.
"""

from abc import ABC
from uuid import UUID

from sqlalchemy.orm import Session

from fieldservice_kernel.db.tenancy import bound_scope
from fieldservice_kernel.domain.tenancy import TenantContext
from fieldservice_kernel.exceptions import TenantIsolationError


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a tenant-bound Session from the caller (usually
        ``handle.session`` inside a TransactionalUnit), perform read-only
        queries and return DTOs.
    """

    def __init__(self, session: Session):
        scope = bound_scope(session)
        if not isinstance(scope, TenantContext):
            raise TenantIsolationError("Selectors require a tenant-bound session")
        self.session = session
        self.tenant_id: UUID = scope.tenant_id
