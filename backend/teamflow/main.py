import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from teamflow.config import get_settings
from teamflow.db.database import async_session, init_db
from teamflow.exceptions import DefinitionNotFound, PreconditionDenied
from teamflow.services.actions import build_default_registry
from teamflow.services.executor_service import ExecutorService
from teamflow.services.run_queue import RunQueue

settings = get_settings()


def configure_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def build_executor(session_factory=async_session) -> ExecutorService:
    registry = build_default_registry(session_factory, settings)
    return ExecutorService(
        registry,
        session_factory=session_factory,
        queue=RunQueue(),
        action_timeout=settings.ACTION_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()

    executor = build_executor()
    app.state.executor = executor

    from teamflow.services.scheduler_service import load_scheduled_workflows, scheduler
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
        await load_scheduled_workflows(executor)

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    await executor.queue.shutdown()


app = FastAPI(title="Teamflow", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PreconditionDenied)
async def precondition_denied_handler(request: Request, exc: PreconditionDenied):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.reason})


@app.exception_handler(DefinitionNotFound)
async def definition_not_found_handler(request: Request, exc: DefinitionNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


from teamflow.api.auth import router as auth_router
from teamflow.api.runs import router as runs_router
from teamflow.api.workflows import router as workflows_router
from teamflow.api.workspaces import router as workspaces_router

app.include_router(auth_router)
app.include_router(workspaces_router)
app.include_router(workflows_router)
app.include_router(runs_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "teamflow"}
