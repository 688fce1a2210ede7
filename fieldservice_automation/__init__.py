"""
Background automations for the field service kernel.

The dispatcher polls due automation definitions, finds their targets and
emits one audit-ledger record per trigger condition, at most once.
"""
