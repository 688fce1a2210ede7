"""
Field Service Kernel

Workflow transition and idempotent reconciliation engine for multi-tenant
field-service records:
- Per-entity state machines enforced in code and at the storage layer
- Payment ledger reconciliation with idempotency keys and duplicate guards
- Append-only audit ledger doubling as the automation dedupe store
- Tenant isolation bound to every unit of work
"""

__version__ = "0.1.0"
