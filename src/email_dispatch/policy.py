# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pure policy gate deciding whether an email may be sent.

The evaluator combines the admin settings snapshot, the recipient's
preference record and the email type into a ``Decision``. It performs no
I/O and keeps no state, so the same inputs always produce the same decision.

Rules, in order:
    1. System disabled: skip every type.
    2. Maintenance mode: skip everything that is not critical.
    3. Per-kind rules from ``_KIND_RULES``:
       - transactional/system: honour the category admin flag if the type
         has one, ignore user opt-outs.
       - marketing: admin flag, then global unsubscribe, then the category
         preference.

Example:
    Evaluating a marketing send::

        decision = PolicyEvaluator().evaluate(EmailType.SALES_ANNOUNCEMENT, preference, settings)
        if not decision.send:
            await recorder.record(... status=EmailStatus.SKIPPED, reason=decision.reason.value)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from .models import (
    AdminEmailSettings,
    EmailKind,
    EmailPreference,
    EmailType,
    EmailTypeSpec,
    SkipReason,
    spec_for,
)


@dataclass(frozen=True)
class Decision:
    """Outcome of a policy evaluation: SEND, or SKIP with a reason."""

    send: bool
    reason: SkipReason | None = None

    @classmethod
    def skip(cls, reason: SkipReason) -> Decision:
        return cls(send=False, reason=reason)

    def __str__(self) -> str:
        return "SEND" if self.send else f"SKIP({self.reason.value})"


SEND = Decision(send=True)


def _category_enabled(spec: EmailTypeSpec, settings: AdminEmailSettings) -> bool:
    return spec.settings_flag is None or bool(getattr(settings, spec.settings_flag))


def _transactional(spec: EmailTypeSpec, preference: EmailPreference, settings: AdminEmailSettings) -> Decision:
    if not _category_enabled(spec, settings):
        return Decision.skip(SkipReason.CATEGORY_DISABLED)
    return SEND


def _marketing(spec: EmailTypeSpec, preference: EmailPreference, settings: AdminEmailSettings) -> Decision:
    if not _category_enabled(spec, settings):
        return Decision.skip(SkipReason.CATEGORY_DISABLED)
    if preference.unsubscribed_all:
        return Decision.skip(SkipReason.USER_UNSUBSCRIBED_ALL)
    if not preference.allows(spec.preference_flag):
        return Decision.skip(SkipReason.USER_CATEGORY_OPTED_OUT)
    return SEND


_KIND_RULES: dict[EmailKind, Callable[[EmailTypeSpec, EmailPreference, AdminEmailSettings], Decision]] = {
    EmailKind.TRANSACTIONAL: _transactional,
    EmailKind.SYSTEM: _transactional,
    EmailKind.MARKETING: _marketing,
}


class PolicyEvaluator:
    """Stateless evaluator of admin settings and user preferences."""

    def evaluate(
        self,
        email_type: EmailType | str,
        preference: EmailPreference | None,
        settings: AdminEmailSettings,
    ) -> Decision:
        """Decide whether ``email_type`` may be sent to the preference owner.

        Args:
            email_type: The template kind being sent.
            preference: The recipient's preference record. ``None`` means the
                record does not exist yet and first-contact defaults apply.
            settings: The admin settings snapshot of the current operation.

        Returns:
            ``SEND`` or a skip ``Decision`` carrying the specific reason.
        """
        spec = spec_for(email_type)
        if not settings.system_enabled:
            return Decision.skip(SkipReason.SYSTEM_DISABLED)
        if settings.maintenance_mode and not spec.critical:
            return Decision.skip(SkipReason.MAINTENANCE_MODE)
        if preference is None:
            preference = EmailPreference.default("")
        return _KIND_RULES[spec.kind](spec, preference, settings)
