"""Step execution coordinator.

Every invocation is stateless: where an execution currently is lives in the
repository (``current_step_id`` and ``StepExecution`` rows), and the next
unit of work is handed back to the transport. Waits are never held in
process; a delay step enqueues a delayed wake-up and returns.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .branching import BranchContext, evaluate_branch
from .config import IdempotencyConfig, QueueConfig
from .constants import CHANNEL_ACTIONS, SEND_IDEMPOTENCY_PREFIX
from .contracts import EXECUTE_STEP, JourneyMessage, SendRequest, StepJob
from .delay import DelayScheduler
from .errors import ExecutionNotActive, StepNotFound
from .events import EXECUTION_COMPLETED, publish_execution_event
from .idempotency import IdempotencyGuard, step_execution_key
from .models import (
    JourneyExecution,
    JourneyStep,
    LogLevel,
    StepConnection,
    StepExecution,
    StepExecutionStatus,
    StepType,
)
from .persistence import JourneyRepository
from .transports import BaseTransport


class ContactLookup(Protocol):
    """Supplies contact attributes for branch evaluation."""

    async def get_contact(
        self, organization_id: str, contact_id: str
    ) -> Mapping[str, Any]:
        ...


def send_idempotency_key(execution_id: str, step_id: str) -> str:
    return f"{SEND_IDEMPOTENCY_PREFIX}:{execution_id}:{step_id}"


def _job_fields(job: StepJob) -> Dict[str, str]:
    return {
        "execution_id": job.execution_id,
        "step_id": job.step_id,
        "journey_id": job.journey_id,
        "contact_id": job.contact_id,
    }


class StepExecutionCoordinator:
    """Advances one execution by one step per unit of work."""

    def __init__(
        self,
        repository: JourneyRepository,
        transport: BaseTransport,
        guard: IdempotencyGuard,
        delay_scheduler: DelayScheduler,
        queues: Optional[QueueConfig] = None,
        idempotency: Optional[IdempotencyConfig] = None,
        contacts: Optional[ContactLookup] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._guard = guard
        self._delay_scheduler = delay_scheduler
        self._queues = queues or QueueConfig()
        self._idempotency = idempotency or IdempotencyConfig()
        self._contacts = contacts
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    async def execute_step(self, job: StepJob) -> None:
        """Run ``job.step_id`` for ``job.execution_id``.

        Raises:
            ExecutionNotActive: The execution is missing or terminal.
            StepNotFound: The step does not exist in the job's version.

        Any other exception marks the step execution failed and propagates
        so the transport redelivers the job.
        """
        fields = _job_fields(job)
        key = step_execution_key(job.execution_id, job.step_id)
        self._logger.info(f"Executing step {job.step_id}", extra=fields)

        if await self._guard.seen(key):
            self._logger.info(
                f"Step {job.step_id} already processed (idempotent skip)", extra=fields
            )
            return
        if await self._repository.find_completed_step_execution(
            job.execution_id, job.step_id
        ):
            self._logger.info(
                f"Step {job.step_id} already completed, restoring idempotency entry",
                extra=fields,
            )
            await self._guard.mark_seen(key)
            return

        execution = await self._repository.find_execution_by_id(
            job.execution_id, job.organization_id
        )
        if execution is None or not execution.is_active:
            self._logger.warning(
                f"Execution {job.execution_id} not found or not active", extra=fields
            )
            raise ExecutionNotActive(
                f"Execution {job.execution_id} not found or not active"
            )

        step = await self._repository.find_step_by_id(job.step_id, job.organization_id)
        if step is None:
            self._logger.warning(f"Step {job.step_id} not found", extra=fields)
            raise StepNotFound(f"Step {job.step_id} not found")
        if step.version_id != job.version_id:
            self._logger.warning(
                f"Step {job.step_id} belongs to version {step.version_id}, "
                f"not {job.version_id}",
                extra=fields,
            )
            raise StepNotFound(
                f"Step {job.step_id} not found in version {job.version_id}"
            )

        step_execution = StepExecution(
            execution_id=job.execution_id,
            step_id=job.step_id,
            organization_id=job.organization_id,
        )
        await self._repository.create_step_execution(step_execution)
        execution.move_to_step(step.id)
        await self._repository.save_execution(execution)

        try:
            if step.type == StepType.DELAY:
                await self._run_delay(job, step, step_execution, key)
                return
            result = await self._run_step(job, step, execution)
            step_execution.complete(result)
            await self._repository.update_step_execution(step_execution)
        except Exception as exc:
            await self._record_failure(job, step_execution, exc)
            raise

        await self._guard.mark_seen(key)
        await self._repository.log_execution(
            job.execution_id,
            job.organization_id,
            LogLevel.INFO,
            f"Step executed: {step.type.value}",
            {"stepId": step.id, "result": result},
        )
        self._logger.info(f"Step {step.id} ({step.type.value}) completed", extra=fields)

    async def process_delayed_step(self, job: StepJob) -> None:
        """Resume after the delay step ``job.step_id`` without re-running it.

        Raises:
            ExecutionNotActive: The execution ended while the wake-up was
                pending.
        """
        fields = _job_fields(job)
        execution = await self._repository.find_execution_by_id(
            job.execution_id, job.organization_id
        )
        if execution is None or not execution.is_active:
            self._logger.info(
                f"Dropping delayed wake for inactive execution {job.execution_id}",
                extra=fields,
            )
            raise ExecutionNotActive(f"Execution {job.execution_id} not active")

        connections = await self._repository.find_connections_from(job.step_id)
        if connections:
            await self._enqueue_targets(job, connections)
        else:
            await self.complete_execution(execution)

    async def complete_execution(self, execution: JourneyExecution) -> None:
        execution.complete()
        await self._repository.save_execution(execution)
        await self._repository.log_execution(
            execution.id,
            execution.organization_id,
            LogLevel.INFO,
            "Journey execution completed",
        )
        await publish_execution_event(
            self._transport, self._queues.events, EXECUTION_COMPLETED, execution
        )
        self._logger.info(
            f"Execution {execution.id} completed",
            extra={"execution_id": execution.id, "journey_id": execution.journey_id},
        )

    # ------------------------------------------------------------------
    async def _run_step(
        self, job: StepJob, step: JourneyStep, execution: JourneyExecution
    ) -> Dict[str, Any]:
        if step.type == StepType.ACTION:
            result = await self._run_action(job, step)
            await self._advance(job, execution)
            return result
        if step.type == StepType.TRIGGER:
            await self._advance(job, execution)
            return {"type": step.type.value}
        if step.type in (StepType.CONDITION, StepType.SPLIT):
            return await self._run_branch(job, step, execution)
        await self.complete_execution(execution)
        return {"type": step.type.value}

    async def _run_action(self, job: StepJob, step: JourneyStep) -> Dict[str, Any]:
        action = step.config.get("action") or step.config.get("type")
        channel = CHANNEL_ACTIONS.get(action) if isinstance(action, str) else None
        if channel is None:
            self._logger.warning(
                f"Unsupported action {action!r} on step {step.id}, skipping",
                extra=_job_fields(job),
            )
            return {"action": action, "placeholder": True}

        template_id = step.config.get("templateId", 0)
        request = SendRequest(
            organization_id=job.organization_id,
            contact_id=job.contact_id,
            template_id=template_id,
            journey_execution_id=job.execution_id,
            step_id=job.step_id,
            channel=channel,
            idempotency_key=send_idempotency_key(job.execution_id, job.step_id),
        )
        await self._transport.publish(
            self._queues.delivery,
            JourneyMessage.wrap(action.replace("send_", "send-"), request),
        )
        return {"action": action, "templateId": template_id, "enqueued": True}

    async def _run_delay(
        self,
        job: StepJob,
        step: JourneyStep,
        step_execution: StepExecution,
        key: str,
    ) -> None:
        delay_ms = await self._delay_scheduler.schedule(job, step.config)
        step_execution.complete({"delayMs": delay_ms})
        await self._repository.update_step_execution(step_execution)
        ttl = max(
            self._idempotency.delay_ttl_seconds,
            delay_ms // 1000 + self._idempotency.ttl_seconds,
        )
        await self._guard.mark_seen(key, ttl)
        await self._repository.log_execution(
            job.execution_id,
            job.organization_id,
            LogLevel.INFO,
            f"Delay step scheduled: {delay_ms}ms",
            {"stepId": step.id, "delayMs": delay_ms},
        )

    async def _run_branch(
        self, job: StepJob, step: JourneyStep, execution: JourneyExecution
    ) -> Dict[str, Any]:
        contact: Mapping[str, Any] = {}
        if self._contacts is not None:
            contact = await self._contacts.get_contact(job.organization_id, job.contact_id)
        label = evaluate_branch(
            step.config,
            BranchContext(
                execution_id=job.execution_id,
                step_id=step.id,
                organization_id=job.organization_id,
                contact_id=job.contact_id,
                contact=dict(contact),
            ),
        )
        connections = await self._repository.find_connections_from(step.id)
        chosen = next((c for c in connections if c.label == label), None)
        if chosen is None and connections:
            chosen = connections[0]
        if chosen is not None:
            await self._enqueue_targets(job, [chosen])
        else:
            await self.complete_execution(execution)
        return {"branch": label}

    async def _advance(self, job: StepJob, execution: JourneyExecution) -> None:
        connections = await self._repository.find_connections_from(job.step_id)
        if connections:
            await self._enqueue_targets(job, connections)
        else:
            await self.complete_execution(execution)

    async def _enqueue_targets(
        self, job: StepJob, connections: List[StepConnection]
    ) -> None:
        for connection in connections:
            await self._transport.publish(
                self._queues.execute_step,
                JourneyMessage.wrap(EXECUTE_STEP, job.for_step(connection.to_step_id)),
            )

    async def _record_failure(
        self, job: StepJob, step_execution: StepExecution, exc: Exception
    ) -> None:
        self._logger.error(
            f"Step {job.step_id} failed: {exc}", extra=_job_fields(job)
        )
        if step_execution.status == StepExecutionStatus.RUNNING:
            step_execution.fail(str(exc) or exc.__class__.__name__)
            await self._repository.update_step_execution(step_execution)
        await self._repository.log_execution(
            job.execution_id,
            job.organization_id,
            LogLevel.ERROR,
            f"Step failed: {exc}",
            {"stepId": job.step_id},
        )
