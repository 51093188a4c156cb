# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the email dispatch engine.

This module contains DispatchCore, which wires the pipeline components
together and exposes the operations used by the HTTP API, the CLI and the
background loops:

- Campaign dispatch: ``send_campaign`` claims a campaign and queues it;
  ``resolve_and_dispatch`` claims and runs it inline. Both are idempotent
  through the atomic claim guard.
- Single-recipient sends: ``evaluate_single`` for transactional and system
  emails, ``handle_event`` for named triggers (order created, user created,
  ...), ``send_test`` for the admin test email.
- Provider callbacks: ``apply_provider_event`` upgrades log rows.
- Admin state: settings snapshot, preferences, campaign CRUD.
- Reporting from maintained counters: ``stats``, ``campaign_stats``,
  ``list_logs``.

Background work:
    - Work loop: consumes queued campaign and event dispatches.
    - Scheduler loop: claims SCHEDULED campaigns whose time has come and
      purges stale rate-limit counters.
    - Cleanup loop: closes stale SMTP connections (production only).

Example:
    Running the core::

        core = DispatchCore(db_path="/data/email_dispatch.db", identity=lookup, transport=transport)
        await core.start()
        await core.handle_command("sendCampaign", {"id": campaign_id})
        await core.stop()
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from .campaigns import CampaignStateMachine
from .collaborators import IdentityLookup, TemplateRenderer, Transport
from .dispatcher import BatchDispatcher
from .errors import (
    DispatchError,
    FatalPipelineError,
    IdentityUnavailable,
    InvalidSettings,
    ResolutionError,
    ResolutionFailed,
    StoreUnavailable,
    UnknownEvent,
    WorkQueueFull,
)
from .log_recorder import LogRecorder
from .logger import get_logger
from .models import (
    ACCEPTED_STATUSES,
    PREFERENCE_FLAGS,
    AdminEmailSettings,
    BatchResult,
    CampaignCreate,
    CampaignStatus,
    CampaignUpdate,
    DeliveryOutcome,
    EmailCampaign,
    EmailLog,
    EmailPreference,
    EmailStatus,
    EmailType,
    Recipient,
    SettingsUpdate,
    format_ts,
    utc_now,
)
from .persistence import Persistence
from .policy import PolicyEvaluator
from .prometheus import DispatchMetrics
from .rate_limit import RateLimiter
from .resolver import RecipientResolver
from .smtp_pool import SMTPPool
from .templates import JinjaTemplateRenderer

EVENT_TYPES: dict[str, EmailType] = {
    "order/created": EmailType.ORDER_CONFIRMATION,
    "order/shipped": EmailType.ORDER_SHIPPED,
    "order/delivered": EmailType.ORDER_DELIVERED,
    "user/created": EmailType.WELCOME,
    "user/password-reset": EmailType.PASSWORD_RESET,
}

DEFAULT_SUBJECTS: dict[EmailType, str] = {
    EmailType.ORDER_CONFIRMATION: "Your order is confirmed",
    EmailType.ORDER_SHIPPED: "Your order has shipped",
    EmailType.ORDER_DELIVERED: "Your order has been delivered",
    EmailType.PASSWORD_RESET: "Reset your password",
    EmailType.WELCOME: "Welcome!",
    EmailType.ADMIN_ALERT: "Admin alert",
}

MAX_LOG_PAGE = 200
CAMPAIGN_DETAIL_LOGS = 100
COUNTER_RETENTION_DAYS = 2

# Event payload keys that identify the recipient rather than feed the template.
_EVENT_IDENTITY_KEYS = ("userId", "user_id", "email", "subject")


def _coerce_flag(value: Any) -> bool:
    """Only a literal ``True`` enables a preference flag."""
    return value is True


class DispatchCore:
    """Orchestrates campaign and transactional email dispatch.

    Attributes:
        persistence: SQLite persistence layer.
        policy: Pure policy evaluator.
        rate_limiter: Per-recipient daily limiter.
        recorder: Delivery log writer.
        campaigns: Campaign lifecycle.
        resolver: Campaign target resolution.
        dispatcher: Bounded-concurrency batch delivery.
        metrics: Prometheus metrics collector.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        *,
        db_path: str = "/data/email_dispatch.db",
        identity: IdentityLookup,
        transport: Transport,
        renderer: TemplateRenderer | None = None,
        smtp_pool: SMTPPool | None = None,
        logger=None,
        metrics: DispatchMetrics | None = None,
        pool_size: int = 10,
        provider_timeout: float = 30.0,
        scheduler_interval: float = 30.0,
        work_queue_size: int = 1000,
        queue_put_timeout: float = 5.0,
        test_mode: bool = False,
    ):
        """Initialize the core and its pipeline components.

        Args:
            db_path: SQLite database path.
            identity: Identity lookup collaborator.
            transport: Outbound transport collaborator.
            renderer: Template renderer. Defaults to the built-in Jinja2 one.
            smtp_pool: SMTP pool backing ``transport``, cleaned periodically.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            pool_size: Recipients processed concurrently per batch.
            provider_timeout: Seconds allowed for one provider call.
            scheduler_interval: Seconds between scheduler passes.
            work_queue_size: Maximum queued dispatches.
            queue_put_timeout: Seconds to wait for room in a full work queue.
            test_mode: Disables the timed scheduler and the SMTP cleanup loop;
                the scheduler only runs when woken with ``run now``.
        """
        self.logger = logger or get_logger()
        self.metrics = metrics or DispatchMetrics()
        self.persistence = Persistence(db_path)
        self.identity = identity
        self.transport = transport
        self.renderer = renderer or JinjaTemplateRenderer()
        self.smtp_pool = smtp_pool
        self.policy = PolicyEvaluator()
        self.rate_limiter = RateLimiter(self.persistence)
        self.recorder = LogRecorder(self.persistence, logger=self.logger)
        self.campaigns = CampaignStateMachine(self.persistence, logger=self.logger)
        self.resolver = RecipientResolver(self.persistence, identity, pool_size=pool_size, logger=self.logger)
        self.dispatcher = BatchDispatcher(
            self.persistence,
            self.renderer,
            transport,
            policy=self.policy,
            rate_limiter=self.rate_limiter,
            recorder=self.recorder,
            metrics=self.metrics,
            logger=self.logger,
            pool_size=pool_size,
            provider_timeout=provider_timeout,
        )
        self._test_mode = bool(test_mode)
        self._scheduler_interval = math.inf if self._test_mode else max(0.05, float(scheduler_interval))
        self._queue_put_timeout = queue_put_timeout
        self._work_queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=work_queue_size)
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_work: asyncio.Task | None = None
        self._task_scheduler: asyncio.Task | None = None
        self._task_cleanup: asyncio.Task | None = None

    async def init(self) -> None:
        """Create the schema, persist default settings and recover interrupted campaigns."""
        await self.persistence.init_db()
        await self.load_settings()
        await self._recover_interrupted()

    # ------------------------------------------------------------------ settings
    async def load_settings(self) -> AdminEmailSettings:
        """Return the authoritative settings snapshot, persisting defaults on first read."""
        row = await self.persistence.get_settings()
        if row is None:
            settings = AdminEmailSettings()
            await self.persistence.save_settings(settings.model_dump(mode="json"))
            return settings
        return AdminEmailSettings.model_validate(row)

    async def update_settings(
        self,
        changes: SettingsUpdate | dict[str, Any],
        *,
        updated_by: str | None = None,
        updated_by_name: str | None = None,
    ) -> AdminEmailSettings:
        """Merge ``changes`` over the current snapshot and replace it wholesale.

        Raises:
            InvalidSettings: The resulting settings do not validate.
        """
        try:
            if not isinstance(changes, SettingsUpdate):
                changes = SettingsUpdate.model_validate(changes)
            current = await self.load_settings()
            merged = current.model_dump()
            merged.update(
                {k: v for k, v in changes.model_dump(exclude_unset=True).items() if v is not None or k == "reply_to"}
            )
            merged.update(updated_by=updated_by, updated_by_name=updated_by_name, updated_at=utc_now())
            settings = AdminEmailSettings.model_validate(merged)
        except ValidationError as exc:
            raise InvalidSettings(str(exc)) from exc
        await self.persistence.save_settings(settings.model_dump(mode="json"))
        self.logger.info("Settings updated by %s", updated_by or "unknown")
        return settings

    # --------------------------------------------------------------- preferences
    async def get_preference(self, user_id: str) -> EmailPreference:
        row = await self.persistence.ensure_preference(user_id, format_ts(utc_now()))
        return EmailPreference.model_validate(row)

    async def update_preference(self, user_id: str, values: dict[str, Any]) -> EmailPreference:
        flags = {k: _coerce_flag(v) for k, v in values.items() if k in PREFERENCE_FLAGS}
        row = await self.persistence.upsert_preference(user_id, flags, format_ts(utc_now()))
        return EmailPreference.model_validate(row)

    # ------------------------------------------------------------------ campaigns
    async def create_campaign(self, payload: CampaignCreate | dict[str, Any], created_by: str | None = None) -> EmailCampaign:
        if not isinstance(payload, CampaignCreate):
            payload = CampaignCreate.model_validate(payload)
        return await self.campaigns.create(payload, created_by=created_by)

    async def campaign_detail(self, campaign_id: str) -> dict[str, Any]:
        """Campaign record plus its most recent log rows."""
        campaign = await self.campaigns.get(campaign_id)
        logs = await self.persistence.list_logs(campaign_id=campaign_id, limit=CAMPAIGN_DETAIL_LOGS)
        return {
            "campaign": campaign.model_dump(mode="json"),
            "logs": [EmailLog.model_validate(row).model_dump(mode="json") for row in logs],
        }

    async def send_campaign(self, campaign_id: str) -> dict[str, Any]:
        """Claim ``campaign_id`` and queue its dispatch.

        The claim happens before returning, so a second call fails with
        ``already-sending`` / ``already-sent`` even if the worker has not
        picked the campaign up yet.
        """
        campaign = await self.campaigns.begin_sending(campaign_id)
        try:
            await self._enqueue({"kind": "campaign", "campaign_id": campaign.id})
        except WorkQueueFull as exc:
            await self.campaigns.fail(campaign.id, f"{exc.code}: {exc}")
            raise
        return {"ok": True, "status": "queued", "campaign_id": campaign.id}

    async def resolve_and_dispatch(self, campaign_id: str) -> BatchResult:
        """Claim and dispatch a campaign inline.

        Raises:
            FatalPipelineError: The claim failed, or resolution / storage failed
                after the claim (the campaign is then FAILED).
        """
        campaign = await self.campaigns.begin_sending(campaign_id)
        return await self._execute_campaign(campaign)

    async def _execute_campaign(self, campaign: EmailCampaign) -> BatchResult:
        try:
            settings = await self.load_settings()
            recipients = await self.resolver.resolve(campaign)
            result = await self.dispatcher.dispatch(
                recipients, campaign.subject, campaign.type, settings, campaign_id=campaign.id
            )
        except FatalPipelineError as exc:
            await self._fail_campaign(campaign.id, f"{exc.code}: {exc}")
            raise
        except Exception as exc:
            self.logger.exception("Unexpected error dispatching campaign %s", campaign.id)
            await self._fail_campaign(campaign.id, f"internal-error: {exc}")
            raise
        await self.campaigns.complete(campaign.id, len(recipients), result)
        self.metrics.inc_campaign("sent")
        return result

    async def _fail_campaign(self, campaign_id: str, error: str) -> None:
        self.metrics.inc_campaign("failed")
        try:
            await self.campaigns.fail(campaign_id, error)
        except StoreUnavailable as exc:
            self.logger.error("Cannot mark campaign %s as FAILED: %s", campaign_id, exc)

    async def _recover_interrupted(self) -> None:
        """Campaigns left SENDING by a previous process can never complete."""
        rows = await self.persistence.list_campaigns(CampaignStatus.SENDING.value, limit=10_000)
        for row in rows:
            await self._fail_campaign(row["id"], "interrupted: dispatch did not complete before shutdown")

    # ------------------------------------------------------------ single sends
    async def evaluate_single(
        self,
        email_type: EmailType | str,
        user_id: str,
        template_data: dict[str, Any] | None = None,
        email: str | None = None,
        subject: str | None = None,
    ) -> DeliveryOutcome:
        """Run the pipeline for one recipient outside of any campaign.

        When ``email`` is omitted the address is looked up through the
        identity collaborator; an identity that cannot be resolved produces a
        FAILED outcome without a log row.

        Raises:
            ResolutionFailed: The identity service is unreachable.
        """
        email_type = EmailType(email_type)
        data = dict(template_data or {})
        if email is None:
            try:
                user = await self.identity.get_user(user_id)
            except ResolutionError as exc:
                self.logger.info("Not sending %s to %s: %s", email_type.value, user_id, exc.code)
                return DeliveryOutcome(user_id=user_id, status=EmailStatus.FAILED, reason=exc.code, error=str(exc))
            except IdentityUnavailable as exc:
                raise ResolutionFailed(f"Identity lookup unavailable: {exc}") from exc
            if not user.email:
                return DeliveryOutcome(
                    user_id=user_id, status=EmailStatus.FAILED, reason=ResolutionError.code, error="no email address"
                )
            email = user.email
            data.setdefault("userName", user.display_name)
        else:
            data.setdefault("userName", email.split("@", 1)[0])
        settings = await self.load_settings()
        recipient = Recipient(user_id=user_id, email=email, template_data=data)
        return await self.dispatcher.dispatch_one(
            recipient, subject or DEFAULT_SUBJECTS.get(email_type, email_type.value), email_type, settings
        )

    async def handle_event(self, name: str, data: dict[str, Any]) -> dict[str, Any]:
        """Queue the email mapped to the trigger ``name``.

        Raises:
            UnknownEvent: ``name`` is not a known trigger or lacks a user id.
        """
        email_type = EVENT_TYPES.get(name)
        if email_type is None:
            raise UnknownEvent(f"Unknown event '{name}'")
        user_id = data.get("userId") or data.get("user_id")
        if not user_id:
            raise UnknownEvent(f"Event '{name}' has no userId")
        if email_type == EmailType.WELCOME:
            await self.persistence.ensure_preference(user_id, format_ts(utc_now()), email_verified=True)
        await self._enqueue(
            {
                "kind": "single",
                "email_type": email_type.value,
                "user_id": user_id,
                "email": data.get("email"),
                "subject": data.get("subject"),
                "template_data": {k: v for k, v in data.items() if k not in _EVENT_IDENTITY_KEYS},
            }
        )
        return {"ok": True, "status": "queued", "type": email_type.value}

    async def send_test(self, email: str, template_data: dict[str, Any] | None = None) -> DeliveryOutcome:
        """Send the WELCOME template to an admin address, logged like any send."""
        data = {"userName": "Admin", **(template_data or {})}
        return await self.evaluate_single(
            EmailType.WELCOME, f"test:{email}", template_data=data, email=email, subject="Test email"
        )

    async def apply_provider_event(
        self, message_id: str, status: str, occurred_at: datetime | None = None
    ) -> bool:
        if isinstance(occurred_at, str):
            occurred_at = datetime.fromisoformat(occurred_at.replace("Z", "+00:00"))
        applied = await self.recorder.apply_provider_event(message_id, status, occurred_at)
        self.metrics.inc_provider_event(str(status), applied)
        return applied

    # ------------------------------------------------------------------ reporting
    async def stats(self) -> dict[str, Any]:
        """Dashboard figures computed from maintained counters."""
        counts = await self.persistence.status_counts()
        accepted = sum(counts.get(s.value, 0) for s in ACCEPTED_STATUSES)
        attempts = accepted + counts.get(EmailStatus.FAILED.value, 0) + counts.get(EmailStatus.SKIPPED.value, 0)
        return {
            "total_emails_sent": accepted,
            "total_campaigns": await self.persistence.count_campaigns(),
            "active_campaigns": await self.persistence.count_campaigns(
                [CampaignStatus.SENDING.value, CampaignStatus.SCHEDULED.value]
            ),
            "users_with_preferences": await self.persistence.count_preferences(),
            "templates_count": len(EmailType),
            "success_rate": round(accepted / attempts * 100, 1) if attempts else 0.0,
            "status_counts": counts,
        }

    async def campaign_stats(self, campaign_id: str) -> dict[str, Any]:
        campaign = await self.campaigns.get(campaign_id)
        counts = await self.persistence.status_counts(campaign_id)
        accepted = sum(counts.get(s.value, 0) for s in ACCEPTED_STATUSES)
        return {
            "campaign_id": campaign.id,
            "status": campaign.status.value,
            "total_recipients": campaign.total_recipients,
            "success_count": campaign.success_count,
            "failure_count": campaign.failure_count,
            "skipped_count": campaign.skipped_count,
            "open_count": campaign.open_count,
            "click_count": campaign.click_count,
            "open_rate": round(campaign.open_count / accepted * 100, 1) if accepted else 0.0,
            "click_rate": round(campaign.click_count / accepted * 100, 1) if accepted else 0.0,
            "status_counts": counts,
        }

    async def list_logs(
        self,
        *,
        status: str | None = None,
        campaign_id: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> dict[str, Any]:
        """One page of log rows, newest first, with totals from the counters."""
        page = max(1, int(page))
        limit = min(max(1, int(limit)), MAX_LOG_PAGE)
        if status:
            status = EmailStatus(status).value
        rows = await self.persistence.list_logs(
            status=status, campaign_id=campaign_id, limit=limit, offset=(page - 1) * limit
        )
        counts = await self.persistence.status_counts(campaign_id)
        total = counts.get(status, 0) if status else sum(counts.values())
        return {
            "logs": [EmailLog.model_validate(row).model_dump(mode="json") for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        }

    # ------------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``: wake the scheduler
        - ``getSettings``, ``updateSettings``
        - ``getPreferences``, ``updatePreferences``
        - ``createCampaign``, ``listCampaigns``, ``getCampaign``,
          ``updateCampaign``, ``deleteCampaign``, ``cancelCampaign``,
          ``sendCampaign``, ``campaignStats``
        - ``triggerEvent``, ``sendEmail``, ``sendTest``, ``providerEvent``
        - ``listLogs``, ``stats``

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: ``{"ok": True, ...}`` or ``{"ok": False, "error": <code>, "detail": <message>}``.
        """
        payload = dict(payload or {})
        try:
            return await self._run_command(cmd, payload)
        except DispatchError as exc:
            return {"ok": False, "error": exc.code, "detail": str(exc)}
        except KeyError as exc:
            return {"ok": False, "error": "invalid-payload", "detail": f"missing field {exc}"}
        except ValueError as exc:
            return {"ok": False, "error": "invalid-payload", "detail": str(exc)}

    async def _run_command(self, cmd: str, payload: dict[str, Any]) -> dict[str, Any]:
        match cmd:
            case "run now":
                self._wake_event.set()
                return {"ok": True}
            case "getSettings":
                settings = await self.load_settings()
                return {"ok": True, "settings": settings.model_dump(mode="json")}
            case "updateSettings":
                updated_by = payload.pop("updated_by", None)
                updated_by_name = payload.pop("updated_by_name", None)
                settings = await self.update_settings(
                    payload, updated_by=updated_by, updated_by_name=updated_by_name
                )
                return {"ok": True, "settings": settings.model_dump(mode="json")}
            case "getPreferences":
                preference = await self.get_preference(payload["user_id"])
                return {"ok": True, "preferences": preference.model_dump(mode="json")}
            case "updatePreferences":
                user_id = payload.pop("user_id")
                preference = await self.update_preference(user_id, payload)
                return {"ok": True, "preferences": preference.model_dump(mode="json")}
            case "createCampaign":
                created_by = payload.pop("created_by", None)
                campaign = await self.create_campaign(payload, created_by=created_by)
                return {"ok": True, "campaign": campaign.model_dump(mode="json")}
            case "listCampaigns":
                page = max(1, int(payload.get("page", 1)))
                limit = min(max(1, int(payload.get("limit", 20))), MAX_LOG_PAGE)
                status = payload.get("status")
                campaigns = await self.campaigns.list_campaigns(status, limit=limit, offset=(page - 1) * limit)
                total = await self.persistence.count_campaigns([CampaignStatus(status).value] if status else None)
                return {
                    "ok": True,
                    "campaigns": [c.model_dump(mode="json") for c in campaigns],
                    "total": total,
                    "page": page,
                    "limit": limit,
                }
            case "getCampaign":
                return {"ok": True, **await self.campaign_detail(payload["id"])}
            case "updateCampaign":
                campaign_id = payload.pop("id")
                campaign = await self.campaigns.update(campaign_id, CampaignUpdate.model_validate(payload))
                return {"ok": True, "campaign": campaign.model_dump(mode="json")}
            case "deleteCampaign":
                await self.campaigns.delete(payload["id"])
                return {"ok": True}
            case "cancelCampaign":
                campaign = await self.campaigns.cancel(payload["id"])
                return {"ok": True, "campaign": campaign.model_dump(mode="json")}
            case "sendCampaign":
                return await self.send_campaign(payload["id"])
            case "campaignStats":
                return {"ok": True, **await self.campaign_stats(payload["id"])}
            case "triggerEvent":
                return await self.handle_event(payload["name"], payload.get("data") or {})
            case "sendEmail":
                outcome = await self.evaluate_single(
                    payload["type"],
                    payload["user_id"],
                    template_data=payload.get("template_data"),
                    email=payload.get("email"),
                    subject=payload.get("subject"),
                )
                return {"ok": True, **outcome.as_dict()}
            case "sendTest":
                outcome = await self.send_test(payload["email"], payload.get("template_data"))
                return {"ok": True, **outcome.as_dict()}
            case "providerEvent":
                applied = await self.apply_provider_event(
                    payload["message_id"], payload["status"], payload.get("occurred_at")
                )
                return {"ok": True, "applied": applied}
            case "listLogs":
                logs = await self.list_logs(
                    status=payload.get("status"),
                    campaign_id=payload.get("campaign_id"),
                    page=payload.get("page", 1),
                    limit=payload.get("limit", 50),
                )
                return {"ok": True, **logs}
            case "stats":
                return {"ok": True, **await self.stats()}
            case _:
                return {"ok": False, "error": "unknown command"}

    # ---------------------------------------------------------------- work queue
    async def _enqueue(self, item: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self._work_queue.put(item), timeout=self._queue_put_timeout)
        except asyncio.TimeoutError as exc:
            raise WorkQueueFull(f"Work queue full ({self._work_queue.qsize()} items)") from exc
        self.metrics.set_queue_depth(self._work_queue.qsize())

    async def _run_work_item(self, item: dict[str, Any]) -> None:
        match item["kind"]:
            case "campaign":
                campaign = await self.campaigns.get(item["campaign_id"])
                await self._execute_campaign(campaign)
            case "single":
                await self.evaluate_single(
                    item["email_type"],
                    item["user_id"],
                    template_data=item.get("template_data"),
                    email=item.get("email"),
                    subject=item.get("subject"),
                )
            case other:
                self.logger.error("Unknown work item kind %r", other)

    async def _process_item(self, item: dict[str, Any]) -> None:
        try:
            await self._run_work_item(item)
        except DispatchError as exc:
            self.logger.error("Work item %s failed: %s (%s)", item.get("kind"), exc.code, exc)
        except Exception as exc:  # pragma: no cover
            self.logger.exception("Unhandled error processing work item: %s", exc)
        finally:
            self.metrics.set_queue_depth(self._work_queue.qsize())

    async def process_pending(self) -> int:
        """Run every queued item inline and return how many were processed."""
        processed = 0
        while True:
            try:
                item = self._work_queue.get_nowait()
            except asyncio.QueueEmpty:
                return processed
            try:
                if item is not None:
                    await self._process_item(item)
                    processed += 1
            finally:
                self._work_queue.task_done()

    async def _work_loop(self) -> None:
        """Consume the work queue until a ``None`` sentinel arrives."""
        self.logger.debug("Work loop started")
        while True:
            item = await self._work_queue.get()
            try:
                if item is None:
                    return
                await self._process_item(item)
            finally:
                self._work_queue.task_done()

    # ------------------------------------------------------------------ scheduler
    async def run_scheduled(self, now: datetime | None = None) -> int:
        """Dispatch every due SCHEDULED campaign and return how many completed."""
        completed = 0
        for campaign_id in await self.campaigns.due(now):
            try:
                await self.resolve_and_dispatch(campaign_id)
                completed += 1
            except FatalPipelineError as exc:
                self.logger.warning("Scheduled campaign %s not dispatched: %s", campaign_id, exc.code)
        await self._apply_retention(now)
        return completed

    async def _apply_retention(self, now: datetime | None = None) -> None:
        """Drop rate-limit counters of days that can no longer be queried."""
        cutoff = self.rate_limiter.day_key((now or utc_now()) - timedelta(days=COUNTER_RETENTION_DAYS))
        removed = await self.persistence.purge_send_counters(cutoff)
        if removed:
            self.logger.debug("Purged %d stale send counters", removed)

    async def _scheduler_loop(self) -> None:
        self.logger.debug("Scheduler loop started")
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                await self._wait_for_wakeup(self._scheduler_interval)
            first_iteration = False
            if self._stop.is_set():
                return
            try:
                await self.run_scheduled()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in scheduler loop: %s", exc)
            await self._wait_for_wakeup(self._scheduler_interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the scheduler until timeout or wake event."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(150)
            await self.smtp_pool.cleanup()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialize storage and spawn the background loops."""
        self.logger.debug("Starting DispatchCore...")
        await self.init()
        self._stop.clear()
        self._task_work = asyncio.create_task(self._work_loop(), name="dispatch-work-loop")
        self._task_scheduler = asyncio.create_task(self._scheduler_loop(), name="campaign-scheduler-loop")
        if self.smtp_pool is not None and not self._test_mode:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")

    async def stop(self) -> None:
        """Stop the loops; queued work ahead of the sentinel is still processed."""
        self._stop.set()
        self._wake_event.set()
        if self._task_work is not None:
            await self._work_queue.put(None)
        if self._task_cleanup is not None:
            self._task_cleanup.cancel()
        await asyncio.gather(
            *(task for task in [self._task_work, self._task_scheduler, self._task_cleanup] if task),
            return_exceptions=True,
        )
        if self.smtp_pool is not None:
            await self.smtp_pool.close_all()
