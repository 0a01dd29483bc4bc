"""HTTP surface — event ingress, manual invocation and run status.

Events are validated synchronously (a malformed descriptor is rejected with
422 and never starts a run) and then enqueued for the server's consumer loop,
so every ingress endpoint answers immediately with 202.

GitHub deliveries additionally go through:
- Request rate limiting (cap bursts to prevent resource exhaustion)
- HMAC-SHA256 signature verification (when a webhook secret is configured)
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import APIRouter, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from tiergate.models import ChangeEvent, EventKind, InvalidTrigger
from tiergate.pipeline.models import RunVerdict
from tiergate.pipeline.publisher import Publisher, render_summary
from tiergate.pipeline.trigger import (
    PULL_REQUEST_ACTIONS,
    event_from_github,
    manual_event,
    parse_event,
)

if TYPE_CHECKING:
    from tiergate.config import TierGateConfig
    from tiergate.github_client import GitHubClient
    from tiergate.pipeline.concurrency import ConcurrencyController
    from tiergate.pipeline.registry import RunRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_event_queue: asyncio.Queue[ChangeEvent] | None = None
_config: TierGateConfig | None = None
_registry: RunRegistry | None = None
_controller: ConcurrencyController | None = None
_github: GitHubClient | None = None
_webhook_secret: str | None = None

# Rate limiting state
_rate_limit_max: int = 60  # max webhook deliveries per window
_rate_limit_window: float = 60.0  # window in seconds
_rate_limit_timestamps: list[float] = []


def configure(
    event_queue: asyncio.Queue[ChangeEvent],
    config: TierGateConfig,
    *,
    registry: RunRegistry | None = None,
    controller: ConcurrencyController | None = None,
    github: GitHubClient | None = None,
    webhook_secret: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Wire the endpoints to the event queue and status sources.

    Args:
        event_queue: Queue consumed by the server's run loop.
        config: Active configuration (pipeline names, summary rendering).
        registry: Run persistence for the status endpoints.
        controller: Concurrency controller, for operator cancellation.
        github: GitHub API client, for the changed files of pull requests.
        webhook_secret: If set, GitHub deliveries must carry a valid signature.
        rate_limit_max: Max GitHub deliveries per minute (0 = unlimited).
    """
    global _event_queue, _config, _registry, _controller, _github, _webhook_secret
    global _rate_limit_max, _rate_limit_timestamps
    _event_queue = event_queue
    _config = config
    _registry = registry
    _controller = controller
    _github = github
    _webhook_secret = webhook_secret
    _rate_limit_max = rate_limit_max
    _rate_limit_timestamps = []


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


def verify_signature(secret: str | None, payload: bytes, signature: str) -> bool:
    """Verify an ``X-Hub-Signature-256`` header against the raw body."""
    if not secret:
        return True
    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _accepting_pipelines(event: ChangeEvent) -> list[str]:
    if _config is None:
        return []
    if event.kind == EventKind.MANUAL and event.pipeline:
        if event.pipeline not in _config.pipelines:
            raise InvalidTrigger(f"Unknown pipeline '{event.pipeline}'")
        return [event.pipeline]
    return list(_config.pipelines)


async def _pull_request_paths(payload: dict[str, Any], delivery_id: str) -> list[str] | None:
    """Changed files of the delivery's pull request.

    Returns None when they cannot be listed; the proposed change then runs
    unfiltered.
    """
    if _github is None or payload.get("action") not in PULL_REQUEST_ACTIONS:
        return None
    full_name = (payload.get("repository") or {}).get("full_name") or ""
    number = payload.get("number", (payload.get("pull_request") or {}).get("number"))
    owner, _, repo = full_name.partition("/")
    if not owner or not repo or not isinstance(number, int):
        return None
    try:
        return await _github.list_pull_request_files(owner, repo, number)
    except httpx.HTTPError as exc:
        logger.warning(
            "Could not list files of %s#%s (delivery=%s): %s", full_name, number, delivery_id, exc
        )
        return None


def _enqueue(event: ChangeEvent) -> None:
    if _event_queue is None:
        logger.error("Event queue not configured, dropping %s event", event.kind.value)
        raise HTTPException(status_code=503, detail="Event queue not configured")
    try:
        _event_queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.warning("Event queue full, rejecting %s event for %s", event.kind.value, event.ref)
        raise HTTPException(status_code=503, detail="Event queue full") from None


# ── Ingress ──────────────────────────────────────────────────────────────────


@router.post("/events", status_code=202)
async def post_event(request: Request) -> dict[str, Any]:
    """Accept a structured change-event descriptor."""
    try:
        raw = await request.json()
    except ValueError:
        raise HTTPException(status_code=422, detail="Body is not valid JSON") from None

    try:
        event = parse_event(raw)
        pipelines = _accepting_pipelines(event)
    except InvalidTrigger as exc:
        logger.warning("Rejected event: %s", exc)
        raise HTTPException(status_code=422, detail=str(exc)) from None

    _enqueue(event)
    logger.info("Accepted %s event for %s (pipelines=%s)", event.kind.value, event.ref, pipelines)
    return {"accepted": pipelines, "kind": event.kind.value, "ref": event.ref}


@router.post("/webhook/github")
async def handle_github_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(...),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive a GitHub delivery, translate it, and enqueue the change event.

    Security checks (in order):
    1. Rate limit
    2. HMAC-SHA256 signature verification
    """
    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()
    if not verify_signature(_webhook_secret, body, x_hub_signature_256):
        logger.warning("Invalid webhook signature for delivery %s", x_github_delivery)
        return Response(status_code=401, content="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        return Response(status_code=400, content="Invalid JSON payload")

    default_branch = _config.project.default_branch if _config else "main"
    changed_paths = None
    if x_github_event == "pull_request":
        changed_paths = await _pull_request_paths(payload, x_github_delivery)
    try:
        event = event_from_github(
            x_github_event,
            payload,
            delivery_id=x_github_delivery,
            default_branch=default_branch,
            changed_paths=changed_paths,
        )
        if event is not None:
            _accepting_pipelines(event)
    except InvalidTrigger as exc:
        logger.warning("Rejected delivery %s: %s", x_github_delivery, exc)
        return Response(status_code=422, content=str(exc))

    if event is None:
        logger.debug("Delivery %s (%s) starts no run", x_github_delivery, x_github_event)
        return Response(status_code=200, content="ignored")

    logger.info(
        "Webhook received: %s -> %s %s (delivery=%s)",
        x_github_event,
        event.kind.value,
        event.ref,
        x_github_delivery,
    )
    _enqueue(event)
    return Response(status_code=202, content="accepted")


class DispatchRequest(BaseModel):
    ref: str
    changed_paths: list[str] = Field(default_factory=list)


@router.post("/pipelines/{name}/dispatch", status_code=202)
async def dispatch_pipeline(name: str, body: DispatchRequest) -> dict[str, Any]:
    """Manual invocation of one named pipeline, bypassing trigger filters."""
    if _config is None or name not in _config.pipelines:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline '{name}'")
    try:
        event = manual_event(name, body.ref, changed_paths=body.changed_paths)
    except InvalidTrigger as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None

    _enqueue(event)
    logger.info("Manual dispatch of pipeline '%s' at %s", name, event.ref)
    return {"accepted": [name], "kind": event.kind.value, "ref": event.ref}


# ── Status ───────────────────────────────────────────────────────────────────


def _require_registry() -> RunRegistry:
    if _registry is None:
        raise HTTPException(status_code=503, detail="Run registry not configured")
    return _registry


@router.get("/runs")
async def list_runs(
    key: str | None = None, verdict: RunVerdict | None = None, limit: int = 50
) -> dict[str, Any]:
    registry = _require_registry()
    runs = await registry.list_runs(concurrency_key=key, verdict=verdict, limit=limit)
    return {"runs": [r.model_dump(mode="json", exclude={"tiers"}) for r in runs]}


@router.get("/runs/{run_id}")
async def get_run(run_id: str) -> JSONResponse:
    registry = _require_registry()
    run = await registry.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return JSONResponse(run.model_dump(mode="json"))


@router.get("/runs/{run_id}/summary", response_class=PlainTextResponse)
async def get_run_summary(run_id: str) -> str:
    registry = _require_registry()
    run = await registry.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    pipeline = _config.get_pipeline(run.pipeline_name) if _config else None
    if pipeline is None:
        raise HTTPException(
            status_code=409, detail=f"Pipeline '{run.pipeline_name}' is no longer configured"
        )
    return render_summary(Publisher().build_summary(run, pipeline))


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str) -> dict[str, Any]:
    """Operator cancellation. The run finishes superseded."""
    if _controller is None:
        raise HTTPException(status_code=503, detail="Concurrency controller not configured")
    cancelled = await _controller.cancel(run_id, "canceled by operator")
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' is not active")
    logger.info("Run %s canceled by operator", run_id)
    return {"run_id": run_id, "canceled": True}
