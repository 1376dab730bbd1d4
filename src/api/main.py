import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.observability import setup_observability
from src.api.persistence_profile import validate_persistence_profile_guardrails
from src.api.routers.approvals import router as approval_router


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    yield


app = FastAPI(
    title="Timesheet Approval API",
    version="0.1.0",
    description=(
        "Multi-tier timesheet approval service.\n\n"
        "Each submission fans out into one approval record per scope. Records move through "
        "`LEAD`, `MANAGER` and `MANAGEMENT` review and end `FROZEN` once management approves."
    ),
    openapi_tags=[
        {
            "name": "Timesheet Approvals",
            "description": "Submission, decision, bulk and reviewer visibility endpoints.",
        },
        {
            "name": "Health",
            "description": "Liveness and readiness probes.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
logger = logging.getLogger(__name__)

app.include_router(approval_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"])
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/live", tags=["Health"])
def health_live() -> dict[str, str]:
    return {"status": "live"}


@app.get("/health/ready", tags=["Health"])
def health_ready() -> dict[str, str]:
    return {"status": "ready"}
