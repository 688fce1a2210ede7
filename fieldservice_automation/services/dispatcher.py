"""
AutomationDispatcher -- in-process polling loop for automation definitions.

Contract:
    ``tick()`` discovers due definitions across tenants, runs each one in its
    own TransactionalUnit as a system actor for that tenant, and returns a
    ``DispatchResult``. ``start()`` / ``stop()`` run ``tick()`` on a
    background thread every ``poll_interval_seconds``.

Architecture: fieldservice_automation/services. Uses
    fieldservice_automation.domain.schedule for pure evaluation and the
    handlers for target discovery and emission.

Invariants enforced:
    - At most once per trigger: every emission goes through
      ``AuditLedger.append_once`` under a unique dedupe key, so a second
      tick over the same state emits nothing.
    - Per-target isolation: each target runs in a SAVEPOINT; a failure is
      rolled back, logged with tenant, target and step, counted, and does
      not stop the remaining targets or the schedule update.
    - Bookkeeping is fatal for the cycle: if ``last_run_at`` /
      ``next_run_at`` cannot be written, the whole cycle rolls back
      (emissions included) and the definition is retried on the next tick
      with its schedule unadvanced.
    - Per-definition isolation: one definition's failure is caught at the
      outer loop and never blocks the others.
    - All timestamps come from the injected Clock.

Non-goals:
    - NOT a distributed scheduler; one dispatcher thread per process.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from fieldservice_automation.domain.schedule import compute_next_run, is_due
from fieldservice_automation.domain.types import (
    AutomationRunResult,
    DispatchResult,
)
from fieldservice_automation.handlers.base import (
    HandlerRegistry,
    default_handler_registry,
)
from fieldservice_config.schema import DispatcherSettings
from fieldservice_kernel.db.tenancy import bind_system_scope
from fieldservice_kernel.domain.clock import Clock, SystemClock
from fieldservice_kernel.domain.tenancy import TenantContext
from fieldservice_kernel.exceptions import AutomationBookkeepingError
from fieldservice_kernel.logging_config import LogContext, get_logger
from fieldservice_kernel.models import AutomationDefinition
from fieldservice_kernel.services.transactional_unit import (
    TransactionalUnit,
    UnitHandle,
)

logger = get_logger("automation.dispatcher")


class AutomationDispatcher:
    """Polls due automation definitions and runs their handlers."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        settings: DispatcherSettings | None = None,
        registry: HandlerRegistry | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._settings = settings or DispatcherSettings()
        self._registry = registry or default_handler_registry()
        self._unit = TransactionalUnit(session_factory, self._clock)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> DispatchResult:
        """Run every due definition once (public for testing and --once)."""
        started_at = self._clock.now()
        due = self._discover_due(started_at)
        runs: list[AutomationRunResult] = []

        for automation_id, tenant_id in due:
            if self._stop_event.is_set():
                break
            try:
                runs.append(self.run_definition(automation_id, tenant_id))
            except Exception as exc:
                logger.exception(
                    "automation_run_failed",
                    extra={
                        "automation_id": str(automation_id),
                        "tenant_id": str(tenant_id),
                        "error_code": getattr(exc, "code", None),
                    },
                )
                runs.append(
                    AutomationRunResult(
                        automation_id=automation_id,
                        tenant_id=tenant_id,
                        automation_type=None,
                        succeeded=False,
                        error_code=getattr(exc, "code", type(exc).__name__),
                        error_message=str(exc),
                    )
                )

        result = DispatchResult(started_at=started_at, runs=tuple(runs))
        logger.info(
            "dispatcher_tick_completed",
            extra={
                "due": result.due,
                "processed": result.processed,
                "failed": result.failed,
                "sent": result.sent,
                "skipped": result.skipped,
                "errors": result.errors,
            },
        )
        return result

    def run_definition(self, automation_id: UUID, tenant_id: UUID) -> AutomationRunResult:
        """
        One cycle for one definition, as a system actor in its tenant.

        Raises whatever rolled the cycle back (AutomationBookkeepingError,
        NotFoundError, ...); ``tick()`` catches it.
        """
        context = TenantContext.system(tenant_id, actor_id=automation_id)
        with LogContext.bind(automation_id=automation_id):
            return self._unit.run(
                context, lambda handle: self._process(handle, automation_id)
            )

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="automation-dispatcher",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "dispatcher_started",
            extra={"poll_interval_seconds": self._settings.poll_interval_seconds},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop; the current definition finishes first."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("dispatcher_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        """Poll in the calling thread until ``stop()`` is called."""
        self._stop_event.clear()
        logger.info(
            "dispatcher_started",
            extra={"poll_interval_seconds": self._settings.poll_interval_seconds},
        )
        self._run_loop()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("dispatcher_tick_exception")
            self._stop_event.wait(timeout=self._settings.poll_interval_seconds)

    def _discover_due(self, now) -> list[tuple[UUID, UUID]]:
        """(automation id, tenant id) of due definitions, across tenants."""
        session = self._session_factory()
        bind_system_scope(session)
        try:
            rows = session.execute(
                select(AutomationDefinition.id, AutomationDefinition.tenant_id)
                .where(
                    AutomationDefinition.enabled.is_(True),
                    or_(
                        AutomationDefinition.next_run_at.is_(None),
                        AutomationDefinition.next_run_at <= now,
                    ),
                )
                .order_by(AutomationDefinition.next_run_at, AutomationDefinition.id)
            ).all()
            session.rollback()
        finally:
            session.close()
        return [(row.id, row.tenant_id) for row in rows]

    def _process(self, handle: UnitHandle, automation_id: UUID) -> AutomationRunResult:
        now = handle.now()
        definition = handle.get_for_update(
            AutomationDefinition, automation_id, label="automation"
        )
        tenant_id = handle.context.tenant_id

        # Another tick may have processed it since discovery.
        if not is_due(definition.enabled, definition.next_run_at, now):
            logger.info("automation_no_longer_due")
            return AutomationRunResult(
                automation_id=definition.id,
                tenant_id=tenant_id,
                automation_type=definition.automation_type,
                next_run_at=definition.next_run_at,
                was_due=False,
            )

        handler = self._registry.get(definition.automation_type)
        config = definition.typed_config(self._settings.config_defaults())
        targets = handler.find_targets(handle, definition, config)

        sent = skipped = errors = 0
        for target in targets:
            savepoint = handle.session.begin_nested()
            try:
                outcome = handler.process_target(handle, definition, config, target)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                errors += 1
                logger.warning(
                    "automation_target_failed",
                    extra={
                        "automation_type": definition.automation_type.value,
                        "target_type": target.entity_type,
                        "target_id": str(target.entity_id),
                        "step": target.step,
                        "error_type": type(exc).__name__,
                        "error_code": getattr(exc, "code", None),
                        "error": str(exc),
                    },
                )
                continue
            sent += outcome.sent
            skipped += outcome.skipped

        next_run_at = self._advance_schedule(handle, definition, now)
        logger.info(
            "automation_run_completed",
            extra={
                "automation_type": definition.automation_type.value,
                "targets": len(targets),
                "sent": sent,
                "skipped": skipped,
                "errors": errors,
                "next_run_at": next_run_at,
            },
        )
        return AutomationRunResult(
            automation_id=definition.id,
            tenant_id=tenant_id,
            automation_type=definition.automation_type,
            targets=len(targets),
            sent=sent,
            skipped=skipped,
            errors=errors,
            next_run_at=next_run_at,
        )

    def _advance_schedule(
        self, handle: UnitHandle, definition: AutomationDefinition, now
    ):
        try:
            next_run_at = compute_next_run(now, self._settings.backoff)
            definition.last_run_at = now
            definition.next_run_at = next_run_at
            handle.touch(definition)
            handle.session.flush()
        except Exception as exc:
            logger.error(
                "automation_bookkeeping_failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )
            raise AutomationBookkeepingError(definition.id, str(exc)) from exc
        return next_run_at
