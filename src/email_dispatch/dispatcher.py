# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded-concurrency delivery of one batch of recipients.

For each recipient the dispatcher runs, in order:

1. Lazy preference lookup (first contact creates the default record).
2. ``PolicyEvaluator`` on the settings snapshot of the batch.
3. ``RateLimiter`` reservation, only when policy allows the send.
4. Template rendering and the provider call under ``provider_timeout``.
5. Exactly one ``EmailLog`` row describing the outcome.

Recipients run concurrently, at most ``pool_size`` at a time. Each task
returns its own ``DeliveryOutcome`` and the batch result is computed from
the gathered outcomes, so counts never depend on shared mutable state. A
recipient failing for any reason other than a fatal pipeline error is
recorded as FAILED and never aborts the batch.
"""

from __future__ import annotations

import asyncio
from email.utils import formataddr
from typing import Any

from .collaborators import TemplateRenderer, Transport
from .concurrency import gather_or_cancel
from .errors import FatalPipelineError, InvalidTemplate, TransportError, TransportTimeout
from .log_recorder import LogRecorder
from .logger import get_logger
from .models import (
    AdminEmailSettings,
    BatchResult,
    DeliveryAttempt,
    DeliveryOutcome,
    EmailPreference,
    EmailStatus,
    EmailType,
    Recipient,
    SkipReason,
    format_ts,
    utc_now,
)
from .persistence import Persistence
from .policy import PolicyEvaluator
from .prometheus import DispatchMetrics
from .rate_limit import RateLimiter

INTERNAL_ERROR = "internal-error"

_COUNTER_FOR = {
    EmailStatus.SENT: "success_count",
    EmailStatus.FAILED: "failure_count",
    EmailStatus.SKIPPED: "skipped_count",
}


class BatchDispatcher:
    """Delivers batches through the transport collaborator.

    Attributes:
        pool_size: Maximum number of recipients processed concurrently.
        provider_timeout: Seconds allowed for a single provider call.
    """

    def __init__(
        self,
        persistence: Persistence,
        renderer: TemplateRenderer,
        transport: Transport,
        *,
        policy: PolicyEvaluator | None = None,
        rate_limiter: RateLimiter | None = None,
        recorder: LogRecorder | None = None,
        metrics: DispatchMetrics | None = None,
        logger=None,
        pool_size: int = 10,
        provider_timeout: float = 30.0,
    ):
        self.persistence = persistence
        self.renderer = renderer
        self.transport = transport
        self.policy = policy or PolicyEvaluator()
        self.rate_limiter = rate_limiter or RateLimiter(persistence)
        self.recorder = recorder or LogRecorder(persistence)
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("EmailDispatch.dispatcher")
        self.pool_size = max(1, int(pool_size))
        self.provider_timeout = float(provider_timeout)

    async def dispatch(
        self,
        recipients: list[Recipient],
        subject: str,
        template_type: EmailType | str,
        settings: AdminEmailSettings,
        campaign_id: str | None = None,
    ) -> BatchResult:
        """Deliver ``subject`` / ``template_type`` to every recipient.

        Returns:
            Counts whose sum equals ``len(recipients)``.

        Raises:
            FatalPipelineError: The store became unavailable mid-batch.
        """
        email_type = EmailType(template_type)
        semaphore = asyncio.Semaphore(self.pool_size)

        async def worker(recipient: Recipient) -> DeliveryOutcome:
            async with semaphore:
                return await self.dispatch_one(recipient, subject, email_type, settings, campaign_id)

        outcomes = await gather_or_cancel(worker(r) for r in recipients)
        result = BatchResult.from_outcomes(list(outcomes))
        self.logger.info(
            "Batch %s/%s done: %d success, %d failed, %d skipped",
            email_type.value,
            campaign_id or "-",
            result.success,
            result.failed,
            result.skipped,
        )
        return result

    async def dispatch_one(
        self,
        recipient: Recipient,
        subject: str,
        email_type: EmailType | str,
        settings: AdminEmailSettings,
        campaign_id: str | None = None,
    ) -> DeliveryOutcome:
        """Run the full pipeline for one recipient and return its outcome."""
        email_type = EmailType(email_type)
        try:
            outcome = await self._deliver(recipient, subject, email_type, settings, campaign_id)
        except FatalPipelineError:
            raise
        except Exception as exc:
            self.logger.exception("Unexpected error delivering %s to %s", email_type.value, recipient.user_id)
            outcome = await self._finish(
                recipient, subject, email_type, campaign_id,
                EmailStatus.FAILED, reason=INTERNAL_ERROR, error=str(exc),
            )
        if campaign_id:
            await self.persistence.increment_campaign_counters(campaign_id, **{_COUNTER_FOR[outcome.status]: 1})
        return outcome

    async def _deliver(
        self,
        recipient: Recipient,
        subject: str,
        email_type: EmailType,
        settings: AdminEmailSettings,
        campaign_id: str | None,
    ) -> DeliveryOutcome:
        row = await self.persistence.ensure_preference(recipient.user_id, format_ts(utc_now()))
        preference = EmailPreference.model_validate(row)

        decision = self.policy.evaluate(email_type, preference, settings)
        if not decision.send:
            return await self._finish(
                recipient, subject, email_type, campaign_id, EmailStatus.SKIPPED, reason=decision.reason.value
            )

        if not await self.rate_limiter.check_and_reserve(
            recipient.user_id, limit=settings.max_emails_per_recipient_per_day
        ):
            return await self._finish(
                recipient, subject, email_type, campaign_id,
                EmailStatus.SKIPPED, reason=SkipReason.RATE_LIMIT_EXCEEDED.value,
            )

        try:
            html = self.renderer.render(email_type.value, self._render_data(recipient, subject))
        except InvalidTemplate as exc:
            return await self._finish(
                recipient, subject, email_type, campaign_id, EmailStatus.FAILED, reason=exc.code, error=str(exc)
            )

        try:
            message_id = await asyncio.wait_for(
                self.transport.send(
                    recipient.email,
                    subject,
                    html,
                    sender=formataddr((settings.from_name, settings.from_email)),
                    reply_to=settings.reply_to,
                ),
                timeout=self.provider_timeout,
            )
        except asyncio.TimeoutError:
            exc = TransportTimeout(f"Provider did not answer within {self.provider_timeout:g}s")
            return await self._finish(
                recipient, subject, email_type, campaign_id, EmailStatus.FAILED, reason=exc.code, error=str(exc)
            )
        except TransportError as exc:
            return await self._finish(
                recipient, subject, email_type, campaign_id, EmailStatus.FAILED, reason=exc.code, error=str(exc)
            )

        return await self._finish(
            recipient, subject, email_type, campaign_id, EmailStatus.SENT, message_id=message_id
        )

    @staticmethod
    def _render_data(recipient: Recipient, subject: str) -> dict[str, Any]:
        data = dict(recipient.template_data)
        data.setdefault("subject", subject)
        data.setdefault("email", recipient.email)
        return data

    async def _finish(
        self,
        recipient: Recipient,
        subject: str,
        email_type: EmailType,
        campaign_id: str | None,
        status: EmailStatus,
        *,
        reason: str | None = None,
        error: str | None = None,
        message_id: str | None = None,
    ) -> DeliveryOutcome:
        log = await self.recorder.record(
            DeliveryAttempt(
                user_id=recipient.user_id,
                email=recipient.email,
                type=email_type,
                subject=subject,
                status=status,
                campaign_id=campaign_id,
                reason=reason,
                error=error,
                message_id=message_id,
            )
        )
        if status == EmailStatus.SENT:
            self.metrics.inc_sent(email_type.value)
            self.logger.debug("Sent %s to %s (%s)", email_type.value, recipient.user_id, message_id)
        elif status == EmailStatus.SKIPPED:
            self.metrics.inc_skipped(email_type.value, reason or "")
            self.logger.debug("Skipped %s for %s: %s", email_type.value, recipient.user_id, reason)
        else:
            self.metrics.inc_failed(email_type.value, reason or "")
            self.logger.warning("Failed %s for %s: %s (%s)", email_type.value, recipient.user_id, reason, error)
        return DeliveryOutcome(
            user_id=recipient.user_id,
            status=status,
            reason=reason,
            error=error,
            message_id=message_id,
            log_id=log.id,
        )
