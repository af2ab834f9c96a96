# Keystone API
# FastAPI over the marketplace facade. Token auth, access logs, rate limits.
# Identity arrives in X-User-Id / X-User-Admin from the upstream auth proxy.

import hmac
import json
import logging
import os
import time
from collections import defaultdict, deque

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

import errors
from errors import Rejection, RejectedError
from marketplace import get_marketplace
from models import SYSTEM_USER_ID, Actor, BidFilter, DisputeFilter, JobFilter

log = logging.getLogger("keystone.api")

app = FastAPI(title="Keystone", version="1.0.0")

KEYSTONE_ENV = os.environ.get("KEYSTONE_ENV", "dev").lower()
AUTH_REQUIRED = KEYSTONE_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("KEYSTONE_API_TOKEN", "")
RATE_LIMIT_REQUESTS = int(os.environ.get("KEYSTONE_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = int(os.environ.get("KEYSTONE_RATE_LIMIT_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)


# ── Middleware ────────────────────────────────────────────────────────

# Public routes skip the bearer token check
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz"}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth. Outside dev/test every request (except public routes)
    must carry KEYSTONE_API_TOKEN.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED:
            return await call_next(request)

        api_token = os.environ.get("KEYSTONE_API_TOKEN", API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "KEYSTONE_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""

        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )

        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Simple in-memory IP rate limiting for API safety."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": {"code": "rate_limited", "message": "Too many requests"},
                },
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(RateLimitMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RejectedError)
async def rejected_error_handler(_: Request, exc: RejectedError):
    r = exc.rejection
    return JSONResponse(status_code=r.http_status, content={"ok": False, "error": r.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        },
    )


# ── Helpers ───────────────────────────────────────────────────────────


def _actor(user_id: str, admin: str) -> Actor:
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    if user_id.strip().lower() == SYSTEM_USER_ID:
        raise RejectedError(errors.forbidden(
            "reserved_identity", f"'{SYSTEM_USER_ID}' is reserved for in-process actions",
        ))
    return Actor(user_id=user_id, is_admin=admin.lower() in {"1", "true", "yes"})


def _respond(result, key: str):
    if isinstance(result, Rejection):
        return JSONResponse(
            status_code=result.http_status,
            content={"ok": False, "error": result.to_dict()},
        )
    if hasattr(result, "to_dict"):
        result = result.to_dict()
    elif isinstance(result, list):
        result = [r.to_dict() if hasattr(r, "to_dict") else r for r in result]
    return {"ok": True, key: result}


def _filter(cls, **kwargs):
    try:
        return cls(**{k: v for k, v in kwargs.items() if v is not None})
    except ValidationError as e:
        raise RejectedError(errors.validation_failed(
            "invalid_filter", "Query parameters failed validation",
            fields=json.loads(json.dumps(e.errors(include_url=False), default=str)),
        ))


# ── Request models ────────────────────────────────────────────────────

Amount = str | int


class VersionIn(BaseModel):
    expected_version: int | None = None


class MilestonePlanIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    amount: Amount
    due_at: float | None = None
    auto_release: bool = True


class JobIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    category: str = ""
    budget_min: Amount
    budget_max: Amount
    expires_at: float | None = None
    milestones: list[MilestonePlanIn] = []


class CancelIn(VersionIn):
    reason: str = ""


class BidIn(BaseModel):
    amount: Amount
    delivery_days: int = Field(ge=1)
    cover_letter: str = ""


class AcceptIn(VersionIn):
    bid_id: str


class MilestoneIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    amount: Amount
    due_at: float | None = None
    auto_release: bool = True


class SubmitIn(VersionIn):
    submission_ref: str
    note: str = ""


class NoteIn(VersionIn):
    note: str = ""


class FeedbackIn(VersionIn):
    feedback: str


class DisputeIn(VersionIn):
    reason: str


class ResolveIn(VersionIn):
    outcome: str
    freelancer_amount: Amount | None = None
    client_amount: Amount | None = None
    note: str = ""


class ManifestEntry(BaseModel):
    name: str
    size: int = Field(ge=0)
    checksum: str


class PackageIn(BaseModel):
    manifest: list[ManifestEntry]
    note: str = ""
    milestone_id: str | None = None


class PackageAcceptIn(VersionIn):
    signature: str = ""
    note: str = ""


class PackageRejectIn(VersionIn):
    reason: str


class ReviewIn(BaseModel):
    rating: int
    comment: str = ""


class JoinIn(BaseModel):
    tab: str = "overview"


class HeartbeatIn(BaseModel):
    tab: str | None = None


class AckIn(BaseModel):
    intent_id: str
    status: str
    settlement_reference: str = ""
    reason: str = ""


# ── Jobs ──────────────────────────────────────────────────────────────


@app.post("/jobs")
def api_create_job(body: JobIn, x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    """Post a job, optionally with its milestone plan."""
    result = get_marketplace().create_job(
        _actor(x_user_id, x_user_admin),
        title=body.title,
        description=body.description,
        category=body.category,
        budget_min=body.budget_min,
        budget_max=body.budget_max,
        expires_at=body.expires_at,
        milestones=[m.model_dump() for m in body.milestones],
    )
    return _respond(result, "job")


@app.get("/jobs")
def api_list_jobs(status: str | None = None, client_id: str | None = None,
                  freelancer_id: str | None = None, category: str | None = None,
                  limit: int = 100):
    flt = _filter(JobFilter, status=status, client_id=client_id,
                  freelancer_id=freelancer_id, category=category, limit=limit)
    return _respond(get_marketplace().list_jobs(flt), "jobs")


@app.get("/jobs/{job_id}")
def api_get_job(job_id: str):
    return _respond(get_marketplace().job_detail(job_id), "job")


@app.post("/jobs/{job_id}/start")
def api_start_job(job_id: str, body: VersionIn | None = None,
                  x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or VersionIn()
    return _respond(get_marketplace().start_job(
        _actor(x_user_id, x_user_admin), job_id, body.expected_version), "job")


@app.post("/jobs/{job_id}/complete")
def api_complete_job(job_id: str, body: VersionIn | None = None,
                     x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or VersionIn()
    return _respond(get_marketplace().complete_job(
        _actor(x_user_id, x_user_admin), job_id, body.expected_version), "job")


@app.post("/jobs/{job_id}/cancel")
def api_cancel_job(job_id: str, body: CancelIn | None = None,
                   x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or CancelIn()
    return _respond(get_marketplace().cancel_job(
        _actor(x_user_id, x_user_admin), job_id, body.reason, body.expected_version), "job")


@app.get("/jobs/{job_id}/timeline")
def api_job_timeline(job_id: str):
    """Every event about a job, in sequence order."""
    return _respond(get_marketplace().job_timeline(job_id), "events")


@app.get("/jobs/{job_id}/invoices")
def api_job_invoices(job_id: str):
    return _respond(get_marketplace().billing.invoices_for_job(job_id), "invoices")


# ── Bids ──────────────────────────────────────────────────────────────


@app.post("/jobs/{job_id}/bids")
def api_place_bid(job_id: str, body: BidIn,
                  x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().place_bid(
        _actor(x_user_id, x_user_admin), job_id, body.amount, body.delivery_days,
        body.cover_letter), "bid")


@app.get("/jobs/{job_id}/bids")
def api_list_job_bids(job_id: str, status: str | None = None,
                      freelancer_id: str | None = None, limit: int = 100):
    flt = _filter(BidFilter, job_id=job_id, status=status,
                  freelancer_id=freelancer_id, limit=limit)
    return _respond(get_marketplace().list_bids(flt), "bids")


@app.get("/bids")
def api_list_bids(freelancer_id: str | None = None, status: str | None = None,
                  limit: int = 100):
    """A freelancer's bids across jobs."""
    flt = _filter(BidFilter, freelancer_id=freelancer_id, status=status, limit=limit)
    return _respond(get_marketplace().list_bids(flt), "bids")


@app.post("/jobs/{job_id}/accept")
def api_accept_bid(job_id: str, body: AcceptIn,
                   x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().accept_bid(
        _actor(x_user_id, x_user_admin), job_id, body.bid_id, body.expected_version), "job")


@app.post("/bids/{bid_id}/{action}")
def api_bid_action(bid_id: str, action: str, body: VersionIn | None = None,
                   x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    handlers = {
        "shortlist": get_marketplace().shortlist_bid,
        "withdraw": get_marketplace().withdraw_bid,
        "reject": get_marketplace().reject_bid,
    }
    if action not in handlers:
        raise HTTPException(status_code=404, detail=f"Unknown bid action '{action}'")
    body = body or VersionIn()
    return _respond(handlers[action](
        _actor(x_user_id, x_user_admin), bid_id, body.expected_version), "bid")


# ── Milestones ────────────────────────────────────────────────────────


@app.post("/jobs/{job_id}/milestones")
def api_add_milestone(job_id: str, body: MilestoneIn,
                      x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().add_milestone(
        _actor(x_user_id, x_user_admin), job_id, body.title, body.amount,
        due_at=body.due_at, auto_release=body.auto_release), "milestone")


@app.get("/milestones/{milestone_id}")
def api_get_milestone(milestone_id: str):
    return _respond(get_marketplace().get_milestone(milestone_id), "milestone")


@app.post("/milestones/{milestone_id}/fund")
def api_fund_milestone(milestone_id: str, body: VersionIn | None = None,
                       x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or VersionIn()
    return _respond(get_marketplace().fund_milestone(
        _actor(x_user_id, x_user_admin), milestone_id, body.expected_version), "milestone")


@app.post("/milestones/{milestone_id}/start")
def api_start_milestone(milestone_id: str, body: VersionIn | None = None,
                        x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or VersionIn()
    return _respond(get_marketplace().start_milestone(
        _actor(x_user_id, x_user_admin), milestone_id, body.expected_version), "milestone")


@app.post("/milestones/{milestone_id}/submit")
def api_submit_milestone(milestone_id: str, body: SubmitIn,
                         x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().submit_milestone(
        _actor(x_user_id, x_user_admin), milestone_id, body.submission_ref, body.note,
        body.expected_version), "milestone")


@app.post("/milestones/{milestone_id}/approve")
def api_approve_milestone(milestone_id: str, body: NoteIn | None = None,
                          x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or NoteIn()
    return _respond(get_marketplace().approve_milestone(
        _actor(x_user_id, x_user_admin), milestone_id, body.note, body.expected_version),
        "milestone")


@app.post("/milestones/{milestone_id}/reject")
def api_reject_milestone(milestone_id: str, body: FeedbackIn,
                         x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().reject_milestone(
        _actor(x_user_id, x_user_admin), milestone_id, body.feedback, body.expected_version),
        "milestone")


@app.post("/milestones/{milestone_id}/dispute")
def api_raise_dispute(milestone_id: str, body: DisputeIn,
                      x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().raise_dispute(
        _actor(x_user_id, x_user_admin), milestone_id, body.reason, body.expected_version),
        "dispute")


# ── Disputes ──────────────────────────────────────────────────────────


@app.get("/disputes")
def api_list_disputes(status: str | None = None, job_id: str | None = None,
                      arbiter_id: str | None = None, limit: int = 100):
    """Dispute queue, oldest first, with age in seconds."""
    flt = _filter(DisputeFilter, status=status, job_id=job_id, arbiter_id=arbiter_id, limit=limit)
    return {"ok": True, "disputes": get_marketplace().list_disputes(flt)}


@app.post("/disputes/{dispute_id}/claim")
def api_claim_dispute(dispute_id: str, body: VersionIn | None = None,
                      x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or VersionIn()
    return _respond(get_marketplace().claim_dispute(
        _actor(x_user_id, x_user_admin), dispute_id, body.expected_version), "dispute")


@app.post("/disputes/{dispute_id}/resolve")
def api_resolve_dispute(dispute_id: str, body: ResolveIn,
                        x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().resolve_dispute(
        _actor(x_user_id, x_user_admin), dispute_id, body.outcome,
        freelancer_amount=body.freelancer_amount, client_amount=body.client_amount,
        note=body.note, expected_version=body.expected_version), "dispute")


@app.post("/disputes/{dispute_id}/dismiss")
def api_dismiss_dispute(dispute_id: str, body: NoteIn | None = None,
                        x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or NoteIn()
    return _respond(get_marketplace().dismiss_dispute(
        _actor(x_user_id, x_user_admin), dispute_id, body.note, body.expected_version),
        "dispute")


# ── Deliveries & reviews ──────────────────────────────────────────────


@app.post("/jobs/{job_id}/packages")
def api_deliver_package(job_id: str, body: PackageIn,
                        x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().deliver_package(
        _actor(x_user_id, x_user_admin), job_id,
        [m.model_dump() for m in body.manifest], body.note, body.milestone_id), "package")


@app.post("/packages/{package_id}/accept")
def api_accept_package(package_id: str, body: PackageAcceptIn | None = None,
                       x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or PackageAcceptIn()
    return _respond(get_marketplace().accept_package(
        _actor(x_user_id, x_user_admin), package_id, body.signature, body.note,
        body.expected_version), "package")


@app.post("/packages/{package_id}/reject")
def api_reject_package(package_id: str, body: PackageRejectIn,
                       x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().reject_package(
        _actor(x_user_id, x_user_admin), package_id, body.reason, body.expected_version),
        "package")


@app.post("/jobs/{job_id}/reviews")
def api_submit_review(job_id: str, body: ReviewIn,
                      x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().submit_review(
        _actor(x_user_id, x_user_admin), job_id, body.rating, body.comment), "review")


# ── Workspace ─────────────────────────────────────────────────────────


@app.post("/jobs/{job_id}/workspace/join")
def api_join_workspace(job_id: str, body: JoinIn | None = None,
                       x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or JoinIn()
    return _respond(get_marketplace().join_workspace(
        _actor(x_user_id, x_user_admin), job_id, body.tab), "session")


@app.get("/jobs/{job_id}/workspace")
def api_workspace_sessions(job_id: str):
    return _respond(get_marketplace().workspace.active_sessions(job_id), "sessions")


@app.post("/workspace/{session_id}/heartbeat")
def api_workspace_heartbeat(session_id: str, body: HeartbeatIn | None = None,
                            x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    body = body or HeartbeatIn()
    return _respond(get_marketplace().heartbeat_workspace(
        _actor(x_user_id, x_user_admin), session_id, body.tab), "session")


@app.post("/workspace/{session_id}/leave")
def api_workspace_leave(session_id: str,
                        x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    return _respond(get_marketplace().leave_workspace(
        _actor(x_user_id, x_user_admin), session_id), "session")


# ── Settlement ────────────────────────────────────────────────────────


@app.post("/settlement/ack")
def api_settlement_ack(body: AckIn):
    """Asynchronous acknowledgment from the settlement service."""
    result = get_marketplace().handle_settlement_ack(body.model_dump())
    if isinstance(result, Rejection):
        return _respond(result, "intent")
    return {"ok": True, "intent": result.intent.to_dict(), "duplicate": result.duplicate}


@app.post("/intents/{intent_id}/retry")
def api_retry_intent(intent_id: str,
                     x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    result = get_marketplace().retry_intent(_actor(x_user_id, x_user_admin), intent_id)
    if isinstance(result, Rejection):
        return _respond(result, "intent")
    return {"ok": True, "intent_id": result.intent_id, "status": result.status}


# ── Reputation ────────────────────────────────────────────────────────


@app.get("/reputation/stats")
def api_reputation_stats():
    return {"ok": True, "stats": get_marketplace().reputation.get_reputation_stats()}


@app.get("/reputation/{user_id}")
def api_reputation(user_id: str):
    rep = get_marketplace().reputation
    records = {}
    for role in ("freelancer", "client"):
        rec = rep.get_reputation(user_id, role)
        if rec is not None:
            records[role] = rec.to_dict()
    return {"ok": True, "user_id": user_id, "reputation": records, "badges": rep.badges(user_id)}


@app.get("/reputation/{user_id}/verify")
def api_reputation_verify(user_id: str):
    return {"ok": True, **get_marketplace().reputation.verify_reputation_integrity(user_id)}


# ── Operations ────────────────────────────────────────────────────────


def _require_admin(x_user_id: str, x_user_admin: str) -> Actor:
    actor = _actor(x_user_id, x_user_admin)
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return actor


@app.post("/admin/sweep")
def api_sweep(x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    _require_admin(x_user_id, x_user_admin)
    return {"ok": True, **get_marketplace().sweep_expired()}


@app.post("/admin/reputation/sync")
def api_reputation_sync(x_user_id: str = Header(""), x_user_admin: str = Header("false")):
    _require_admin(x_user_id, x_user_admin)
    return {"ok": True, **get_marketplace().reputation.sync_all()}


@app.get("/events/verify")
def api_verify_chain():
    """Replay the event hash chain."""
    return {"ok": True, **get_marketplace().events.verify_chain()}


@app.get("/events/{entity_type}/{entity_id}")
def api_entity_history(entity_type: str, entity_id: str):
    history = get_marketplace().events.get_entity_history(entity_type, entity_id)
    return {"ok": True, "events": [e.to_dict() for e in history]}


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": KEYSTONE_ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("KEYSTONE_API_TOKEN", API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = get_marketplace().db.storage_healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )
    return {"ok": True, "status": "ready", "storage": storage}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("KEYSTONE_HOST", "0.0.0.0"),
                port=int(os.environ.get("KEYSTONE_PORT", "8000")))
