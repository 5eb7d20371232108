"""Workflow run executor: creates run records and drives their actions to a terminal state."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamflow.db.database import async_session
from teamflow.exceptions import ActionExecutionError, DefinitionNotFound, PreconditionDenied
from teamflow.models.workflow import Workflow
from teamflow.models.workflow_run import RUN_COMPLETED, RUN_FAILED, RUN_RUNNING, WorkflowRun
from teamflow.services.actions import ActionRegistry
from teamflow.services.run_queue import RunQueue

logger = logging.getLogger(__name__)


def _now() -> datetime:
    # naive UTC, matching what SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def _uncancellable(aw: Awaitable[Any]) -> Any:
    """Await ``aw`` to completion even if the caller is cancelled meanwhile.

    A cancellation received while waiting is re-raised once ``aw`` is done.
    """
    task = asyncio.ensure_future(aw)
    cancelled = False
    while not task.done():
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.done():
                raise
            cancelled = True
    if cancelled:
        raise asyncio.CancelledError
    return task.result()


class ExecutorService:
    def __init__(
        self,
        registry: ActionRegistry,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        queue: RunQueue | None = None,
        action_timeout: float | None = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.queue = queue or RunQueue()
        self.action_timeout = action_timeout

    async def invoke(
        self,
        workflow_id: str,
        db: AsyncSession,
        user_id: str | None = None,
        trigger_data: Any = None,
    ) -> WorkflowRun:
        workflow = await db.get(Workflow, workflow_id)
        if workflow is None:
            raise DefinitionNotFound(workflow_id)
        return await self.start_run(workflow, db, user_id=user_id, trigger_data=trigger_data)

    async def start_run(
        self,
        workflow: Workflow,
        db: AsyncSession,
        user_id: str | None = None,
        trigger_data: Any = None,
    ) -> WorkflowRun:
        """Create a running run record and hand its execution to the run queue.

        Returns as soon as the record is committed; the caller observes the
        outcome through the run record.
        """
        if not workflow.is_active:
            raise PreconditionDenied("Workflow is not active")

        run = WorkflowRun(
            workflow_id=workflow.id,
            user_id=user_id,
            trigger_data_json=json.dumps(trigger_data) if trigger_data is not None else None,
            status=RUN_RUNNING,
            started_at=_now(),
        )
        db.add(run)
        await db.commit()
        await db.refresh(run)
        logger.info(f"Run {run.id} created for workflow {workflow.id}")

        self.queue.submit(
            run.id,
            self.execute_run(run.id, workflow.id, trigger_data),
            on_cancel=self._record_cancelled,
        )
        return run

    def cancel_run(self, run_id: str) -> bool:
        return self.queue.cancel(run_id)

    async def execute_run(self, run_id: str, workflow_id: str, trigger_data: Any = None) -> None:
        """Run every action of the workflow in order and record the outcome.

        Never raises (apart from re-raising cancellation): every failure ends
        as a ``failed`` run.
        """
        results: list[dict] = []
        try:
            actions = await self._load_actions(workflow_id)
            for action in actions:
                action_type = action.get("type") if isinstance(action, dict) else None
                try:
                    data = await self._run_action(action, trigger_data)
                except Exception as e:
                    logger.warning(f"Run {run_id}: action {action_type} failed: {e}")
                    results.append({"action": action_type, "result": "error", "error": str(e)})
                    raise
                results.append({"action": action_type, "result": "success", "data": data})
        except DefinitionNotFound as e:
            await self._finish(run_id, RUN_FAILED, error_message=str(e))
        except asyncio.CancelledError:
            await self._finish(run_id, RUN_FAILED, results, "Run cancelled")
            raise
        except Exception as e:
            await self._finish(run_id, RUN_FAILED, results, str(e) or "Unknown error")
        else:
            await self._finish(run_id, RUN_COMPLETED, results)

    async def _load_actions(self, workflow_id: str) -> list:
        async with self.session_factory() as db:
            workflow = await db.get(Workflow, workflow_id)
            if workflow is None:
                raise DefinitionNotFound(workflow_id)
            actions = json.loads(workflow.actions_json or "[]")
        if not isinstance(actions, list):
            raise ValueError("Workflow actions must be a list")
        return actions

    async def _run_action(self, action: Any, trigger_data: Any) -> Any:
        if self.action_timeout is None:
            return await self.registry.dispatch(action, trigger_data)
        try:
            return await asyncio.wait_for(self.registry.dispatch(action, trigger_data), timeout=self.action_timeout)
        except asyncio.TimeoutError:
            action_type = action.get("type") if isinstance(action, dict) else None
            raise ActionExecutionError(action_type, f"Action {action_type} timed out after {self.action_timeout}s")

    async def _record_cancelled(self, run_id: str) -> None:
        """Fail a run whose task was cancelled, unless the run already recorded an outcome."""
        await self._finish(run_id, RUN_FAILED, error_message="Run cancelled", warn_if_terminal=False)

    async def _finish(
        self,
        run_id: str,
        status: str,
        results: list[dict] | None = None,
        error_message: str | None = None,
        warn_if_terminal: bool = True,
    ) -> None:
        """Write the run's terminal state once; the write completes even if the caller is cancelled."""
        await _uncancellable(self._write_outcome(run_id, status, results, error_message, warn_if_terminal))

    async def _write_outcome(
        self,
        run_id: str,
        status: str,
        results: list[dict] | None,
        error_message: str | None,
        warn_if_terminal: bool,
    ) -> None:
        try:
            async with self.session_factory() as db:
                run = await db.get(WorkflowRun, run_id)
                if run is None:
                    logger.warning(f"Run {run_id} disappeared before it could be marked {status}")
                    return
                if run.is_terminal:
                    if warn_if_terminal:
                        logger.warning(f"Run {run_id} is already {run.status}; not marking {status}")
                    return

                run.status = status
                run.result_json = json.dumps(results, default=str) if results is not None else None
                run.error_message = error_message if status == RUN_FAILED else None
                run.completed_at = _now()
                await db.commit()
        except Exception:
            logger.exception(f"Could not record {status} state for run {run_id}")
            return

        if status == RUN_FAILED:
            logger.info(f"Run {run_id} failed: {error_message}")
        else:
            logger.info(f"Run {run_id} completed ({len(results or [])} actions)")
