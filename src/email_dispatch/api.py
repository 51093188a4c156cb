# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the email dispatch service.

This module provides the REST API of the dispatch engine:

- Admin settings and per-user preferences
- Campaign CRUD, send, cancel and statistics
- Transactional triggers (``/events/{name}``) and direct sends
- Provider status callbacks (``/webhooks/provider``)
- Log browsing, dashboard statistics and Prometheus metrics

Every endpoint except ``/health`` requires the ``X-API-Token`` header when a
token is configured. Endpoints delegate to ``DispatchCore.handle_command``
and translate its error codes into HTTP status codes.

Example:
    Creating and running the API application::

        from email_dispatch.api import create_app

        app = create_app(core, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Literal, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .core import DispatchCore
from .models import (
    AdminEmailSettings,
    CampaignCreate,
    CampaignStatus,
    CampaignUpdate,
    EmailCampaign,
    EmailLog,
    EmailPreference,
    EmailType,
    SettingsUpdate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Email Dispatch Service")
service: DispatchCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

# Error code returned by the core -> HTTP status.
ERROR_STATUS: Dict[str, int] = {
    "campaign-not-found": status.HTTP_404_NOT_FOUND,
    "already-sending": status.HTTP_409_CONFLICT,
    "already-sent": status.HTTP_409_CONFLICT,
    "invalid-campaign-state": status.HTTP_409_CONFLICT,
    "store-unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "resolution-failed": status.HTTP_503_SERVICE_UNAVAILABLE,
    "queue-full": status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
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


class SettingsPayload(SettingsUpdate):
    """Partial settings update plus the editor stamp."""
    updated_by: Optional[str] = None
    updated_by_name: Optional[str] = None


class SettingsResponse(CommandStatus):
    settings: AdminEmailSettings


class PreferencesResponse(CommandStatus):
    preferences: EmailPreference


class CampaignResponse(CommandStatus):
    campaign: EmailCampaign


class CampaignDetailResponse(CampaignResponse):
    logs: List[EmailLog] = Field(default_factory=list)


class CampaignsResponse(CommandStatus):
    campaigns: List[EmailCampaign]
    total: int
    page: int
    limit: int


class CampaignStatsResponse(CommandStatus):
    campaign_id: str
    status: CampaignStatus
    total_recipients: int
    success_count: int
    failure_count: int
    skipped_count: int
    open_count: int
    click_count: int
    open_rate: float
    click_rate: float
    status_counts: Dict[str, int]


class QueuedResponse(CommandStatus):
    status: Literal["queued"]
    campaign_id: Optional[str] = None
    type: Optional[EmailType] = None


class EventPayload(BaseModel):
    """Trigger data; must carry ``userId`` and may carry ``email``."""
    model_config = ConfigDict(extra="allow")


class SendEmailPayload(BaseModel):
    type: EmailType
    user_id: str
    email: Optional[str] = None
    subject: Optional[str] = None
    template_data: Dict[str, Any] = Field(default_factory=dict)


class TestEmailPayload(BaseModel):
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    template_data: Dict[str, Any] = Field(default_factory=dict)


class OutcomeResponse(CommandStatus):
    """Outcome of a single send; ``error`` carries the delivery error detail."""
    user_id: str
    status: str
    reason: Optional[str] = None
    message_id: Optional[str] = None
    log_id: Optional[str] = None


class ProviderEventPayload(BaseModel):
    message_id: str
    status: Literal["DELIVERED", "OPENED", "CLICKED", "BOUNCED"]
    occurred_at: Optional[datetime] = None


class ProviderEventResponse(CommandStatus):
    applied: bool


class LogsResponse(CommandStatus):
    logs: List[EmailLog]
    total: int
    page: int
    limit: int
    pages: int


class StatsResponse(CommandStatus):
    total_emails_sent: int
    total_campaigns: int
    active_campaigns: int
    users_with_preferences: int
    templates_count: int
    success_rate: float
    status_counts: Dict[str, int]


def create_app(
    svc: DispatchCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`email_dispatch.core.DispatchCore` serving the commands.
    api_token:
        Optional secret required in the ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Email Dispatch Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    async def call(cmd: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        if not service:
            raise HTTPException(500, "Service not initialized")
        result = await service.handle_command(cmd, payload or {})
        if result.get("ok") is not True:
            code = result.get("error") or "error"
            http_status = ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST)
            if http_status >= 500:
                logger.error("%s failed: %s (%s)", cmd, code, result.get("detail"))
            raise HTTPException(http_status, detail={"error": code, "detail": result.get("detail")})
        return result

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.warning("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status():
        return BasicOkResponse(ok=True)

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the scheduler to pick up due campaigns immediately."""
        return BasicOkResponse.model_validate(await call("run now"))

    # Settings -----------------------------------------------------------------
    @api.get("/settings", response_model=SettingsResponse, dependencies=[auth_dependency])
    async def get_settings():
        return SettingsResponse.model_validate(await call("getSettings"))

    @api.put("/settings", response_model=SettingsResponse, dependencies=[auth_dependency])
    async def update_settings(payload: SettingsPayload):
        """Merge the given fields into the settings and replace the record."""
        return SettingsResponse.model_validate(await call("updateSettings", payload.model_dump(exclude_unset=True)))

    # Preferences --------------------------------------------------------------
    @api.get("/preferences/{user_id}", response_model=PreferencesResponse, dependencies=[auth_dependency])
    async def get_preferences(user_id: str):
        """Return the user's preferences, creating the defaults on first access."""
        return PreferencesResponse.model_validate(await call("getPreferences", {"user_id": user_id}))

    @api.put("/preferences/{user_id}", response_model=PreferencesResponse, dependencies=[auth_dependency])
    async def update_preferences(user_id: str, payload: Dict[str, Any]):
        return PreferencesResponse.model_validate(await call("updatePreferences", {**payload, "user_id": user_id}))

    # Campaigns ----------------------------------------------------------------
    @api.post(
        "/campaigns",
        response_model=CampaignResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[auth_dependency],
    )
    async def create_campaign(payload: CampaignCreate, created_by: Optional[str] = None):
        data = payload.model_dump(mode="json", exclude_unset=True)
        data["created_by"] = created_by
        return CampaignResponse.model_validate(await call("createCampaign", data))

    @api.get("/campaigns", response_model=CampaignsResponse, dependencies=[auth_dependency])
    async def list_campaigns(status: Optional[CampaignStatus] = None, page: int = 1, limit: int = 20):
        payload: Dict[str, Any] = {"page": page, "limit": limit}
        if status is not None:
            payload["status"] = status.value
        return CampaignsResponse.model_validate(await call("listCampaigns", payload))

    @api.get("/campaigns/{campaign_id}", response_model=CampaignDetailResponse, dependencies=[auth_dependency])
    async def get_campaign(campaign_id: str):
        """Campaign record with its latest log rows."""
        return CampaignDetailResponse.model_validate(await call("getCampaign", {"id": campaign_id}))

    @api.put("/campaigns/{campaign_id}", response_model=CampaignResponse, dependencies=[auth_dependency])
    async def update_campaign(campaign_id: str, payload: CampaignUpdate):
        data = payload.model_dump(mode="json", exclude_unset=True)
        data["id"] = campaign_id
        return CampaignResponse.model_validate(await call("updateCampaign", data))

    @api.delete("/campaigns/{campaign_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delete_campaign(campaign_id: str):
        return BasicOkResponse.model_validate(await call("deleteCampaign", {"id": campaign_id}))

    @api.post("/campaigns/{campaign_id}/cancel", response_model=CampaignResponse, dependencies=[auth_dependency])
    async def cancel_campaign(campaign_id: str):
        return CampaignResponse.model_validate(await call("cancelCampaign", {"id": campaign_id}))

    @api.post(
        "/campaigns/{campaign_id}/send",
        response_model=QueuedResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[auth_dependency],
    )
    async def send_campaign(campaign_id: str):
        """Claim the campaign and queue its dispatch."""
        return QueuedResponse.model_validate(await call("sendCampaign", {"id": campaign_id}))

    @api.get("/campaigns/{campaign_id}/stats", response_model=CampaignStatsResponse, dependencies=[auth_dependency])
    async def campaign_stats(campaign_id: str):
        return CampaignStatsResponse.model_validate(await call("campaignStats", {"id": campaign_id}))

    # Transactional ------------------------------------------------------------
    @api.post(
        "/events/{name:path}",
        response_model=QueuedResponse,
        response_model_exclude_none=True,
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=[auth_dependency],
    )
    async def trigger_event(name: str, payload: EventPayload):
        """Queue the email mapped to a trigger such as ``order/created``."""
        return QueuedResponse.model_validate(await call("triggerEvent", {"name": name, "data": payload.model_dump()}))

    @api.post("/emails", response_model=OutcomeResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_email(payload: SendEmailPayload):
        """Send one transactional or system email synchronously."""
        return OutcomeResponse.model_validate(await call("sendEmail", payload.model_dump(mode="json")))

    @api.post("/emails/test", response_model=OutcomeResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_test(payload: TestEmailPayload):
        return OutcomeResponse.model_validate(await call("sendTest", payload.model_dump()))

    @api.post("/webhooks/provider", response_model=ProviderEventResponse, dependencies=[auth_dependency])
    async def provider_event(payload: ProviderEventPayload):
        """Apply a delivery / open / click / bounce callback from the provider."""
        return ProviderEventResponse.model_validate(await call("providerEvent", payload.model_dump()))

    # Reporting ----------------------------------------------------------------
    @api.get("/logs", response_model=LogsResponse, dependencies=[auth_dependency])
    async def list_logs(
        status: Optional[str] = None,
        campaign_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ):
        payload = {"status": status, "campaign_id": campaign_id, "page": page, "limit": limit}
        return LogsResponse.model_validate(await call("listLogs", payload))

    @api.get("/stats", response_model=StatsResponse, dependencies=[auth_dependency])
    async def stats():
        return StatsResponse.model_validate(await call("stats"))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
