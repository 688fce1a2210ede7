"""
TenantContext -- identity bound to a unit of work.

The API layer authenticates the caller and hands the core a TenantContext.
The dispatcher builds one per automation with ``TenantContext.system()``.
The transactional unit binds it to the session so the isolation listeners
and PostgreSQL row-level security apply to every statement.
"""

from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID, uuid4


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    TECH = "tech"
    SYSTEM = "system"


SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")

MANAGER_ROLES = frozenset({Role.OWNER, Role.ADMIN, Role.SYSTEM})


def new_trace_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class TenantContext:
    """
    (tenant, actor, role) triple plus the correlation id.

    Contract: frozen; a unit of work never changes identity mid-flight.
    """

    tenant_id: UUID
    actor_id: UUID
    role: Role
    trace_id: str = field(default_factory=new_trace_id)

    def __post_init__(self) -> None:
        if not isinstance(self.tenant_id, UUID):
            raise TypeError("tenant_id must be a UUID")
        if not isinstance(self.actor_id, UUID):
            raise TypeError("actor_id must be a UUID")
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    @classmethod
    def system(
        cls,
        tenant_id: UUID,
        actor_id: UUID | None = None,
        trace_id: str | None = None,
    ) -> "TenantContext":
        """System actor scoped to one tenant (used by the dispatcher)."""
        return cls(
            tenant_id=tenant_id,
            actor_id=actor_id or SYSTEM_ACTOR_ID,
            role=Role.SYSTEM,
            trace_id=trace_id or new_trace_id(),
        )

    @property
    def is_system(self) -> bool:
        return self.role is Role.SYSTEM

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES

    def log_fields(self) -> dict[str, str]:
        return {
            "tenant_id": str(self.tenant_id),
            "actor_id": str(self.actor_id),
            "role": self.role.value,
            "trace_id": self.trace_id,
        }
