from contextlib import asynccontextmanager
from fastapi import FastAPI
import structlog
from taskflow_engine.api.exceptions import taskflow_exception_handler, general_exception_handler
from taskflow_engine.api.routes import router, public_router
from taskflow_engine.database.connection import init_db
from taskflow_engine.services.exceptions import TaskflowError
from taskflow_engine.services.runtime import get_runtime

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Taskflow Engine")
    await init_db()
    logger.info("Database initialized successfully")

    runtime = get_runtime()
    await runtime.start()
    try:
        yield
    finally:
        logger.info("Shutting down Taskflow Engine")
        await runtime.stop()


app = FastAPI(
    title="Taskflow Engine",
    description="Schedules natural-language task flows, tracks their runs and resumes them on user input",
    version="0.1.0",
    lifespan=lifespan
)

app.add_exception_handler(TaskflowError, taskflow_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(router)
app.include_router(public_router)
