import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from plan_ingest import __version__
from plan_ingest.api.plans import router as plans_router
from plan_ingest.logging_config import configure_logging

configure_logging()

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Plan Ingest API", version=__version__)
app.include_router(plans_router)


@app.get("/", response_class=PlainTextResponse)
def read_root() -> str:
    """Healthcheck endpoint for the service."""
    return "ok"


@app.get("/healthz", response_class=PlainTextResponse)
def healthcheck() -> str:
    """Liveness probe used by container orchestrators."""
    return "ok"
