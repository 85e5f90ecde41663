"""Compensating sagas for multi-step order/credit mutations.

A saga is an ordered list of remote calls. Each step may declare the call
that undoes it. Steps without a compensation are pivots: once a pivot has
succeeded the saga can only move forward, so a later failure parks the saga
for retry instead of rolling back.

Every state transition is written to the outbox before the next call is made,
which lets an interrupted saga be resumed after a restart.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ReconcilerError
from .logger import logger
from .schemas import ReconciliationResult, StepResult

if TYPE_CHECKING:
    from .outbox import Outbox

CallKind = Literal[
    "place_order",
    "update_order",
    "cancel_order",
    "add_product",
    "delete_product",
    "deduct_credit",
    "increase_credit",
    "update_amount_due",
]


class RemoteCall(BaseModel):
    """A serialisable description of one backend call."""

    kind: CallKind
    params: dict[str, Any] = Field(default_factory=dict)


class StepStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    DONE = "done"
    FAILED = "failed"
    COMPENSATED = "compensated"


class SagaStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    RETRY = "retry"


UNFINISHED = {SagaStatus.RUNNING, SagaStatus.COMPENSATING, SagaStatus.RETRY}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SagaStep(BaseModel):
    """One step of a saga.

    Attributes:
        name: Step name reported in results.
        action: Call performed when the step runs.
        compensation: Call that undoes the action, None for pivot steps.
        compensation_binding: Maps compensation params to fields of the
            action's response, e.g. the id of a freshly placed order.
    """

    name: str
    action: RemoteCall
    compensation: Optional[RemoteCall] = None
    compensation_binding: dict[str, str] = Field(default_factory=dict)
    status: StepStatus = StepStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    compensation_error: Optional[str] = None


class SagaRecord(BaseModel):
    """A saga and its progress, as persisted in the outbox."""

    saga_id: str = Field(default_factory=lambda: f"saga-{uuid.uuid4().hex[:12]}")
    operation: str
    customer_id: str
    order_id: Optional[str] = None
    idempotency_key: str = Field(default_factory=lambda: uuid.uuid4().hex)
    status: SagaStatus = SagaStatus.RUNNING
    steps: list[SagaStep] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def finished(self) -> bool:
        return self.status not in UNFINISHED

    def passed_pivot(self) -> bool:
        """True once a step that cannot be undone has been applied."""
        return any(s.status == StepStatus.DONE and s.compensation is None for s in self.steps)

    def step_key(self, step: SagaStep, undo: bool = False) -> str:
        key = f"{self.idempotency_key}:{step.name}"
        return f"{key}:undo" if undo else key

    def to_result(self, **extra) -> ReconciliationResult:
        steps = [
            StepResult(
                name=s.name,
                ok=s.status in (StepStatus.DONE, StepStatus.COMPENSATED) and s.error is None,
                error=s.error,
                compensated=s.status == StepStatus.COMPENSATED,
                compensation_error=s.compensation_error,
            )
            for s in self.steps
        ]
        return ReconciliationResult(
            saga_id=self.saga_id,
            operation=self.operation,
            status=self.status.value,
            order_id=self.order_id,
            customer_id=self.customer_id,
            steps=steps,
            **extra,
        )


Executor = Callable[[RemoteCall, str], Optional[dict]]


class SagaRunner:
    """Drives sagas against an executor and records progress in an outbox."""

    def __init__(self, executor: Executor, outbox: "Outbox"):
        self._execute = executor
        self._outbox = outbox

    def run(self, saga: SagaRecord) -> SagaRecord:
        """Run a new saga from its first step."""
        logger.info(f"Starting saga | saga_id={saga.saga_id} | operation={saga.operation} | steps={len(saga.steps)}")
        # Claimed before the first write so pending() never sees it unowned.
        self._outbox.claim(saga.saga_id)
        try:
            self._persist(saga)
            self._drive(saga)
        finally:
            self._outbox.release(saga.saga_id)
        return saga

    def resume(self, saga: SagaRecord) -> Optional[SagaRecord]:
        """Continue an unfinished saga loaded from the outbox.

        An interrupted step is re-sent with its original idempotency key, so
        a call that already reached the backend is not applied twice.

        Returns:
            The resumed saga, or None when it is already finished or being
            driven by another thread.
        """
        if saga.finished:
            return None
        if not self._outbox.claim(saga.saga_id):
            logger.info(f"Saga in progress elsewhere, not resuming | saga_id={saga.saga_id}")
            return None
        try:
            # The caller's snapshot may predate a run that ended meanwhile.
            current = self._outbox.get(saga.saga_id) or saga
            if current.finished:
                return None
            logger.warning(f"Resuming saga | saga_id={current.saga_id} | status={current.status.value}")
            if current.status == SagaStatus.COMPENSATING:
                self._compensate(current)
                return current
            for step in current.steps:
                if step.status in (StepStatus.STARTED, StepStatus.FAILED):
                    step.status = StepStatus.PENDING
                    step.error = None
            self._drive(current)
            return current
        finally:
            self._outbox.release(saga.saga_id)

    def _drive(self, saga: SagaRecord) -> None:
        saga.status = SagaStatus.RUNNING
        self._persist(saga)
        for step in saga.steps:
            if step.status == StepStatus.DONE:
                continue
            step.status = StepStatus.STARTED
            self._persist(saga)
            try:
                response = self._execute(step.action, saga.step_key(step))
            except ReconcilerError as exc:
                step.status = StepStatus.FAILED
                step.error = str(exc)
                logger.error(f"Saga step failed | saga_id={saga.saga_id} | step={step.name} | error={exc}")
                if saga.passed_pivot():
                    saga.status = SagaStatus.RETRY
                    self._persist(saga)
                    return
                self._compensate(saga)
                return
            step.result = response or {}
            self._bind(step)
            step.status = StepStatus.DONE
            self._persist(saga)
        saga.status = SagaStatus.COMPLETED
        self._persist(saga)
        logger.info(f"Saga completed | saga_id={saga.saga_id} | operation={saga.operation}")

    def _compensate(self, saga: SagaRecord) -> None:
        saga.status = SagaStatus.COMPENSATING
        self._persist(saga)
        for step in reversed(saga.steps):
            if step.status != StepStatus.DONE or step.compensation is None:
                continue
            try:
                self._execute(step.compensation, saga.step_key(step, undo=True))
            except ReconcilerError as exc:
                step.compensation_error = str(exc)
                self._persist(saga)
                logger.error(f"Compensation failed | saga_id={saga.saga_id} | step={step.name} | error={exc}")
                return
            step.status = StepStatus.COMPENSATED
            step.compensation_error = None
            self._persist(saga)
            logger.info(f"Step compensated | saga_id={saga.saga_id} | step={step.name}")
        saga.status = SagaStatus.COMPENSATED
        self._persist(saga)

    @staticmethod
    def _bind(step: SagaStep) -> None:
        if step.compensation is None or not step.compensation_binding:
            return
        for param, field in step.compensation_binding.items():
            if field in step.result:
                step.compensation.params[param] = step.result[field]

    def _persist(self, saga: SagaRecord) -> None:
        saga.updated_at = _utc_now()
        self._outbox.record(saga)
