"""
FastAPI application factory and HTTP schemas for the delivery queue.

The module exposes a `create_app` function that builds the REST API used to
enqueue jobs, inspect them, trigger manual retries and manage the
suppression list. Authentication is enforced through a configurable API
token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Literal, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import AsyncDeliveryCore

app = FastAPI(title="Async Delivery Queue")
service: AsyncDeliveryCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "invalid_job": status.HTTP_400_BAD_REQUEST,
    "suppressed_recipient": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "not_retryable": status.HTTP_409_CONFLICT,
    "invalid_token": status.HTTP_401_UNAUTHORIZED,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    active: bool
    worker_id: str
    counts: Dict[str, int]


class EnqueuePayload(BaseModel):
    """Payload accepted by ``POST /jobs``."""
    parent_ref: str
    sub_ref: str
    recipient: str
    subject: str = ""
    body: str = ""
    priority: Optional[int] = None


class JobRecord(BaseModel):
    """Job as exposed by the API. The message body is omitted."""
    id: str
    parent_ref: str
    sub_ref: str
    recipient: str
    subject: str
    status: str
    attempt_count: int
    max_attempts: int
    next_attempt_at: Optional[float] = None
    last_error: Optional[str] = None
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    priority: int
    lease_owner: Optional[str] = None
    queued_at: float
    last_tried_at: Optional[float] = None
    sent_at: Optional[float] = None


class JobResponse(CommandStatus):
    job: JobRecord
    created: Optional[bool] = None


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


class DeliveryResponse(CommandStatus):
    delivery: Dict[str, Any]


class SuppressionPayload(BaseModel):
    email: str
    reason: Optional[str] = None
    source: Literal["misdirected", "admin", "bounce", "abuse", "other"] = "admin"
    expires_at: Optional[float] = None


class SuppressionRecord(BaseModel):
    email: str
    reason: Optional[str] = None
    source: str
    manual: bool
    hit_count: int
    suppressed_at: float
    expires_at: Optional[float] = None


class SuppressionResponse(CommandStatus):
    suppression: SuppressionRecord


class SuppressionsResponse(CommandStatus):
    suppressions: List[SuppressionRecord] = Field(default_factory=list)


class LinkResponse(CommandStatus):
    link: str


def _raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a failed command result into an HTTP error."""
    if result.get("ok") is True:
        return result
    code = result.get("code")
    status_code = ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=status_code, detail={"error": result.get("error"), "code": code})


def create_app(
    svc: AsyncDeliveryCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_delivery_queue.core.AsyncDeliveryCore`
        that implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Async Delivery Queue", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    # The dependency reads the token from the module level app.
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    def _service() -> AsyncDeliveryCore:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_status():
        """Return worker state and the number of jobs per status."""
        result = await _service().handle_command("status", {})
        return StatusResponse.model_validate(result)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the dispatcher so it polls immediately."""
        result = await _service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        result = await _service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        result = await _service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @api.post(
        "/jobs",
        response_model=JobResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_201_CREATED,
        dependencies=[auth_dependency],
    )
    async def enqueue_job(payload: EnqueuePayload):
        """Queue a message for asynchronous delivery.

        A request identical to an existing job returns that job with
        ``created`` set to false.
        """
        result = await _service().handle_command("enqueue", payload.model_dump())
        return JobResponse.model_validate(_raise_for_result(result))

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(
        job_status: Optional[str] = Query(default=None, alias="status"),
        limit: Optional[int] = Query(default=None, ge=1),
    ):
        """List jobs in dispatch order, optionally filtered by status."""
        result = await _service().handle_command("listJobs", {"status": job_status, "limit": limit})
        return JobsResponse.model_validate(_raise_for_result(result))

    @api.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        result = await _service().handle_command("getJob", {"id": job_id})
        return JobResponse.model_validate(_raise_for_result(result))

    @api.post(
        "/jobs/{job_id}/retry",
        response_model=JobResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def retry_job(job_id: str):
        """Requeue a job that ended in ``permanent_failure``."""
        result = await _service().handle_command("retry", {"id": job_id})
        return JobResponse.model_validate(_raise_for_result(result))

    @api.get(
        "/jobs/{job_id}/misdirected-link",
        response_model=LinkResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def misdirected_link(job_id: str):
        """Signed link the recipient can follow to report the message as misdirected."""
        result = await _service().handle_command("misdirectedLink", {"id": job_id})
        return LinkResponse.model_validate(_raise_for_result(result))

    @api.get("/report-misdirected", response_model=SuppressionResponse, response_model_exclude_none=True)
    async def report_misdirected(
        m: Optional[str] = Query(default=None),
        e: Optional[str] = Query(default=None),
        t: Optional[str] = Query(default=None),
    ):
        """Public endpoint behind the report link. The HMAC token replaces the API token."""
        result = await _service().handle_command("reportMisdirected", {"id": m, "email": e, "token": t})
        return SuppressionResponse.model_validate(_raise_for_result(result))

    @api.get(
        "/deliveries/{parent_ref}/{sub_ref}",
        response_model=DeliveryResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def get_delivery(parent_ref: str, sub_ref: str):
        """Return the delivery sub-field of a parent record."""
        result = await _service().handle_command("getDelivery", {"parent_ref": parent_ref, "sub_ref": sub_ref})
        return DeliveryResponse.model_validate(_raise_for_result(result))

    @api.post(
        "/suppressions",
        response_model=SuppressionResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def add_suppression(payload: SuppressionPayload):
        result = await _service().handle_command("suppress", payload.model_dump())
        return SuppressionResponse.model_validate(_raise_for_result(result))

    @api.get("/suppressions", response_model=SuppressionsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_suppressions():
        result = await _service().handle_command("listSuppressed", {})
        return SuppressionsResponse.model_validate(result)

    @api.delete(
        "/suppressions/{email}",
        response_model=BasicOkResponse,
        response_model_exclude_none=True,
        dependencies=[auth_dependency],
    )
    async def remove_suppression(email: str):
        result = await _service().handle_command("unsuppress", {"email": email})
        return BasicOkResponse.model_validate(_raise_for_result(result))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the workers."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
