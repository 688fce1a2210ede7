"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor for every service. A service receives the
    ``UnitHandle`` of the caller's transactional unit and writes through its
    session with ``flush()`` -- never ``commit()``.

Invariants enforced:
    Transaction boundaries: services flush within the caller's unit and never
    commit or roll back themselves. ``TransactionalUnit.run`` owns both.
"""

from abc import ABC
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from fieldservice_kernel.domain.tenancy import TenantContext

if TYPE_CHECKING:
    from fieldservice_kernel.services.transactional_unit import UnitHandle


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - ``self.session`` is the unit's session; ``self.context`` is the
          identity bound to it.
        - The service never calls ``session.commit()`` or ``rollback()``.
    """

    def __init__(self, handle: "UnitHandle"):
        self.handle = handle
        self.session: Session = handle.session
        self.context: TenantContext = handle.context
