"""FastAPI application that starts releases from GitHub webhooks.

Endpoints:
- POST /webhook/github - GitHub push webhook; tag pushes start a release run
- GET /runs - Status of every run started by this process
- GET /runs/{tag} - Status and summary of the run for one tag
- GET /health - Health check for load balancers and monitoring

Only tag pushes start a run; branch pushes and tag deletions are ignored.
Pushing a tag again while its run is still in flight supersedes that run: the
old run is cancelled (and still reports its aborted state) before the new
one starts.

To run locally:
    release-pipeline-server
    # or: uvicorn release_pipeline.main:app --port 8000
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from release_pipeline import __version__
from release_pipeline.config import DEFAULT_CONFIG_PATH, Secrets, load_pipeline_config
from release_pipeline.logging_config import get_logger, setup_logging
from release_pipeline.pipeline import ReleasePipeline, build_pipeline
from release_pipeline.schemas import TAG_REF_PREFIX, ReleaseTrigger, RunSummary

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Run registry
# ---------------------------------------------------------------------------


@dataclass
class RunRecord:
    """One release run started by this process."""

    trigger: ReleaseTrigger
    pipeline: ReleasePipeline
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    task: asyncio.Task[None] | None = None
    summary: RunSummary | None = None
    superseded: bool = False

    async def capture(self, summary: RunSummary) -> None:
        self.summary = summary

    @property
    def status(self) -> str:
        if self.superseded:
            return "superseded"
        if self.summary is not None:
            return self.summary.status.value
        if self.task is not None and self.task.done():
            return "aborted"
        return "running"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tag": self.trigger.tag,
            "ref": self.trigger.ref,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "jobs": {name: state.value for name, state in self.pipeline.job_states.items()},
        }
        if self.summary is not None:
            data["summary"] = self.summary.model_dump(mode="json")
        return data


class RunRegistry:
    """Starts runs and keeps at most one in flight per tag.

    Usage:
        registry = RunRegistry(lambda: build_pipeline(config, secrets))
        record = registry.start(ReleaseTrigger(ref="refs/tags/v1.4.0"))
    """

    def __init__(self, pipeline_factory: Callable[[], ReleasePipeline]) -> None:
        self._factory = pipeline_factory
        self._runs: dict[str, RunRecord] = {}

    def start(self, trigger: ReleaseTrigger) -> RunRecord:
        """Start a run for trigger, superseding an in-flight run for the same tag.

        Must be called from a running event loop.
        """
        previous = self._runs.get(trigger.tag)
        previous_task = None
        if previous is not None and previous.task is not None and not previous.task.done():
            previous.superseded = True
            previous.task.cancel()
            previous_task = previous.task
            logger.warning("run_superseded", tag=trigger.tag)

        pipeline = self._factory()
        record = RunRecord(trigger=trigger, pipeline=pipeline)
        pipeline.hooks.add_run_hook(record.capture)
        record.task = asyncio.create_task(
            self._run(record, previous_task), name=f"release-run-{trigger.tag}"
        )
        record.task.add_done_callback(_retrieve_outcome)
        self._runs[trigger.tag] = record
        return record

    async def _run(self, record: RunRecord, previous: asyncio.Task[None] | None) -> None:
        if previous is not None:
            # The old run must finish its cancellation before the new one
            # touches the same release assets
            await asyncio.gather(previous, return_exceptions=True)
        try:
            await record.pipeline.run(record.trigger)
        except asyncio.CancelledError:
            logger.warning("run_aborted", tag=record.trigger.tag)
            raise
        except Exception as exc:
            logger.error("run_crashed", tag=record.trigger.tag, error=str(exc), exc_info=True)
            raise

    def get(self, tag: str) -> RunRecord | None:
        return self._runs.get(tag)

    def all(self) -> list[RunRecord]:
        return list(self._runs.values())

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait for them to report."""
        tasks = [r.task for r in self._runs.values() if r.task is not None and not r.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _retrieve_outcome(task: asyncio.Task[None]) -> None:
    """Mark a finished run's exception as retrieved; _run has already logged it."""
    if not task.cancelled():
        task.exception()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check a GitHub X-Hub-Signature-256 header against the request body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


# ---------------------------------------------------------------------------
# Application Lifespan (startup/shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Load configuration once at startup and cancel runs on shutdown."""
    setup_logging()
    config = load_pipeline_config(
        os.environ.get("RELEASE_PIPELINE_CONFIG", str(DEFAULT_CONFIG_PATH))
    )
    secrets = Secrets.from_env()
    dry_run = os.environ.get("RELEASE_PIPELINE_DRY_RUN", "").lower() in ("1", "true", "yes")

    # Fail fast on missing credentials rather than on the first webhook
    build_pipeline(config, secrets, dry_run=dry_run)

    app.state.secrets = secrets
    app.state.registry = RunRegistry(lambda: build_pipeline(config, secrets, dry_run=dry_run))
    yield
    await app.state.registry.shutdown()


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Release Pipeline",
    description="Builds, publishes and announces tagged releases",
    version=__version__,
    lifespan=lifespan,
)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.time()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=round(time.time() - start, 3),
        )
        return response


app.add_middleware(LoggingMiddleware)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.post("/webhook/github")
async def github_webhook(
    request: Request,
    x_github_event: str = Header(""),
    x_hub_signature_256: str | None = Header(None),
) -> JSONResponse:
    """Receive a GitHub webhook delivery.

    Returns:
        202 when a release run was started, 200 for ignored events

    Raises:
        HTTPException: 401 on a bad signature, 400 on a malformed payload
    """
    body = await request.body()
    secrets: Secrets = request.app.state.secrets
    if secrets.webhook_secret and not verify_signature(
        secrets.webhook_secret, body, x_hub_signature_256
    ):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    if x_github_event == "ping":
        return JSONResponse({"status": "pong"})
    if x_github_event != "push":
        return JSONResponse({"status": "ignored", "reason": f"event {x_github_event!r}"})

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"Malformed JSON payload: {exc}")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    ref = payload.get("ref") or ""
    if not ref.startswith(TAG_REF_PREFIX):
        return JSONResponse({"status": "ignored", "reason": "not a tag push"})
    if payload.get("deleted"):
        return JSONResponse({"status": "ignored", "reason": "tag deleted"})

    try:
        trigger = ReleaseTrigger(ref=ref)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    registry: RunRegistry = request.app.state.registry
    record = registry.start(trigger)
    logger.info("run_accepted", tag=trigger.tag)
    return JSONResponse(
        status_code=202,
        content={
            "status": "accepted",
            "tag": trigger.tag,
            "started_at": record.started_at.isoformat(),
        },
    )


@app.get("/runs")
async def list_runs(request: Request) -> list[dict[str, Any]]:
    registry: RunRegistry = request.app.state.registry
    return [record.to_dict() for record in registry.all()]


@app.get("/runs/{tag}")
async def get_run(tag: str, request: Request) -> dict[str, Any]:
    registry: RunRegistry = request.app.state.registry
    record = registry.get(tag)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No run for tag {tag!r}")
    return record.to_dict()


def serve() -> None:
    """Console entry point: serve the webhook app with uvicorn."""
    import uvicorn

    uvicorn.run(
        "release_pipeline.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
