import json
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select

from teamflow.exceptions import DefinitionNotFound, PreconditionDenied
from teamflow.models.workflow import Workflow

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def _job_id(workflow_id: str) -> str:
    return f"workflow_{workflow_id}"


def cron_expression(workflow: Workflow) -> str | None:
    try:
        config = json.loads(workflow.trigger_config_json or "{}")
    except json.JSONDecodeError:
        return None
    cron = config.get("cron") if isinstance(config, dict) else None
    return cron or None


def parse_cron(expression: str) -> CronTrigger:
    """Build a trigger from a five-field crontab expression; raises ValueError when invalid."""
    return CronTrigger.from_crontab(expression, timezone=timezone.utc)


async def execute_scheduled_workflow(workflow_id: str, executor):
    async with executor.session_factory() as db:
        try:
            run = await executor.invoke(
                workflow_id,
                db,
                trigger_data={"scheduledAt": datetime.now(timezone.utc).isoformat()},
            )
        except DefinitionNotFound:
            logger.warning(f"Scheduled workflow {workflow_id} no longer exists; removing schedule")
            remove_workflow_schedule(workflow_id)
            return
        except PreconditionDenied as e:
            logger.warning(f"Scheduled workflow {workflow_id} not started: {e.reason}")
            return
        logger.info(f"Scheduled run {run.id} started for workflow {workflow_id}")


async def load_scheduled_workflows(executor):
    async with executor.session_factory() as db:
        result = await db.execute(
            select(Workflow).where(
                Workflow.trigger_type == "time",
                Workflow.is_active.is_(True),
            )
        )
        workflows = result.scalars().all()

    count = 0
    for workflow in workflows:
        if sync_workflow_schedule(workflow, executor):
            count += 1
    logger.info(f"Loaded {count} scheduled workflows")


def add_workflow_schedule(workflow_id: str, expression: str, executor) -> bool:
    try:
        trigger = parse_cron(expression)
    except ValueError as e:
        logger.error(f"Failed to schedule workflow {workflow_id}: {e}")
        return False

    scheduler.add_job(
        execute_scheduled_workflow,
        trigger=trigger,
        args=[workflow_id, executor],
        id=_job_id(workflow_id),
        replace_existing=True,
    )
    logger.info(f"Scheduled workflow {workflow_id} with cron: {expression}")
    return True


def remove_workflow_schedule(workflow_id: str):
    job_id = _job_id(workflow_id)
    if scheduler.running and scheduler.get_job(job_id):
        scheduler.remove_job(job_id)
        logger.info(f"Removed schedule for workflow {workflow_id}")


def sync_workflow_schedule(workflow: Workflow, executor) -> bool:
    """Make the scheduler match the workflow's trigger settings. Returns True when a job is registered."""
    if not scheduler.running:
        return False
    expression = cron_expression(workflow)
    if workflow.trigger_type == "time" and workflow.is_active and expression:
        return add_workflow_schedule(workflow.id, expression, executor)
    remove_workflow_schedule(workflow.id)
    return False
