# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and value types for the email dispatch engine.

This module defines the data model shared by every component: admin
settings, user preferences, campaigns, delivery log rows and the closed
catalogue of email types.

Models:
    - AdminEmailSettings: Process-wide admin configuration (singleton)
    - EmailPreference: Per-user consent flags
    - EmailCampaign / CampaignCreate / CampaignUpdate: Bulk marketing sends
    - EmailLog: One row per delivery attempt

Value types:
    - EmailType / EmailKind / EmailTypeSpec: The tagged email type variant
    - Recipient, DeliveryOutcome, BatchResult: Pipeline payloads
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_ts(value: datetime | None) -> str | None:
    """Serialise a datetime for storage; fixed width keeps string ordering."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


# Email types ----------------------------------------------------------------
class EmailType(str, Enum):
    """Every template kind the engine knows how to send."""

    ORDER_CONFIRMATION = "ORDER_CONFIRMATION"
    ORDER_SHIPPED = "ORDER_SHIPPED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    PASSWORD_RESET = "PASSWORD_RESET"
    WELCOME = "WELCOME"
    SALES_ANNOUNCEMENT = "SALES_ANNOUNCEMENT"
    SPECIAL_OFFER = "SPECIAL_OFFER"
    NEW_PRODUCT = "NEW_PRODUCT"
    ADMIN_ALERT = "ADMIN_ALERT"


class EmailKind(str, Enum):
    TRANSACTIONAL = "transactional"
    MARKETING = "marketing"
    SYSTEM = "system"


@dataclass(frozen=True)
class EmailTypeSpec:
    """Policy-relevant description of an email type.

    Attributes:
        kind: Transactional, marketing or system.
        settings_flag: AdminEmailSettings attribute enabling the category,
            or None when the type has no admin switch.
        preference_flag: EmailPreference attribute holding the user's
            consent, only meaningful for marketing types.
        critical: Whether the type is still sent during maintenance mode.
    """

    kind: EmailKind
    settings_flag: str | None = None
    preference_flag: str | None = None
    critical: bool = False


EMAIL_TYPE_SPECS: dict[EmailType, EmailTypeSpec] = {
    EmailType.ORDER_CONFIRMATION: EmailTypeSpec(EmailKind.TRANSACTIONAL, "enable_order_emails", critical=True),
    EmailType.ORDER_SHIPPED: EmailTypeSpec(EmailKind.TRANSACTIONAL, "enable_order_emails", critical=True),
    EmailType.ORDER_DELIVERED: EmailTypeSpec(EmailKind.TRANSACTIONAL, "enable_order_emails", critical=True),
    EmailType.PASSWORD_RESET: EmailTypeSpec(EmailKind.TRANSACTIONAL, critical=True),
    EmailType.WELCOME: EmailTypeSpec(EmailKind.TRANSACTIONAL),
    EmailType.SALES_ANNOUNCEMENT: EmailTypeSpec(EmailKind.MARKETING, "enable_sales_emails", "sales_emails"),
    EmailType.SPECIAL_OFFER: EmailTypeSpec(EmailKind.MARKETING, "enable_offer_emails", "offer_emails"),
    EmailType.NEW_PRODUCT: EmailTypeSpec(EmailKind.MARKETING, "enable_new_product_emails", "new_product_emails"),
    EmailType.ADMIN_ALERT: EmailTypeSpec(EmailKind.SYSTEM),
}

MARKETING_TYPES = frozenset(t for t, s in EMAIL_TYPE_SPECS.items() if s.kind is EmailKind.MARKETING)


def spec_for(email_type: EmailType | str) -> EmailTypeSpec:
    """Return the spec of an email type, accepting its string value."""
    return EMAIL_TYPE_SPECS[EmailType(email_type)]


# Statuses -------------------------------------------------------------------
class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class EmailStatus(str, Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    DELIVERED = "DELIVERED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"
    BOUNCED = "BOUNCED"


# Statuses meaning the provider accepted the message at some point.
ACCEPTED_STATUSES = frozenset(
    {EmailStatus.SENT, EmailStatus.DELIVERED, EmailStatus.OPENED, EmailStatus.CLICKED, EmailStatus.BOUNCED}
)


class SkipReason(str, Enum):
    """Machine-readable reasons for a SKIPPED log row."""

    SYSTEM_DISABLED = "system-disabled"
    MAINTENANCE_MODE = "maintenance-mode"
    CATEGORY_DISABLED = "category-disabled"
    USER_UNSUBSCRIBED_ALL = "user-unsubscribed-all"
    USER_CATEGORY_OPTED_OUT = "user-category-opted-out"
    RATE_LIMIT_EXCEEDED = "rate-limit-exceeded"


# Settings -------------------------------------------------------------------
class AdminEmailSettings(BaseModel):
    """Process-wide admin configuration.

    Instances are frozen: a dispatch operation takes one snapshot and threads
    it through every policy decision.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    system_enabled: bool = True
    maintenance_mode: bool = False
    enable_sales_emails: bool = True
    enable_offer_emails: bool = True
    enable_new_product_emails: bool = True
    enable_order_emails: bool = True
    from_name: Annotated[str, Field(default="Shop", min_length=1, max_length=255)]
    from_email: Annotated[str, Field(default="noreply@example.com", pattern=r"^[^@\s]+@[^@\s]+$")]
    reply_to: Annotated[str, Field(pattern=r"^[^@\s]+@[^@\s]+$")] | None = None
    max_emails_per_recipient_per_day: Annotated[
        int,
        Field(default=5, ge=0, le=100, description="Daily ceiling per recipient (0 = unlimited)"),
    ]
    updated_by: str | None = None
    updated_by_name: str | None = None
    updated_at: datetime | None = None


class SettingsUpdate(BaseModel):
    """Partial settings payload merged over the current snapshot."""

    model_config = ConfigDict(extra="forbid")

    system_enabled: bool | None = None
    maintenance_mode: bool | None = None
    enable_sales_emails: bool | None = None
    enable_offer_emails: bool | None = None
    enable_new_product_emails: bool | None = None
    enable_order_emails: bool | None = None
    from_name: str | None = None
    from_email: str | None = None
    reply_to: str | None = None
    max_emails_per_recipient_per_day: int | None = None


# Preferences ----------------------------------------------------------------
PREFERENCE_FLAGS = (
    "sales_emails",
    "offer_emails",
    "new_product_emails",
    "order_confirmation",
    "order_updates",
    "unsubscribed_all",
)


class EmailPreference(BaseModel):
    """Per-user consent flags. Defaults are the first-contact opt-in values."""

    user_id: str
    sales_emails: bool = True
    offer_emails: bool = True
    new_product_emails: bool = True
    order_confirmation: bool = True
    order_updates: bool = True
    unsubscribed_all: bool = False
    email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def default(cls, user_id: str) -> EmailPreference:
        return cls(user_id=user_id)

    def allows(self, flag: str) -> bool:
        """Whether the user consents to the marketing category ``flag``."""
        if self.unsubscribed_all:
            return False
        return bool(getattr(self, flag))


# Campaigns ------------------------------------------------------------------
def _ensure_marketing(value: EmailType | None) -> EmailType | None:
    if value is not None and value not in MARKETING_TYPES:
        raise ValueError(f"campaign type must be a marketing template, got {value.value}")
    return value


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


class CampaignCreate(BaseModel):
    """Payload for creating a campaign."""

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: str | None = None
    type: EmailType
    subject: Annotated[str, Field(min_length=1, max_length=998)]
    template_data: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None
    target_all: bool = False
    target_user_ids: list[str] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def marketing_only(cls, v: EmailType) -> EmailType:
        return _ensure_marketing(v)

    @field_validator("target_user_ids")
    @classmethod
    def dedupe_targets(cls, v: list[str]) -> list[str]:
        return _dedupe(v)


class CampaignUpdate(BaseModel):
    """Editable campaign fields; only DRAFT and SCHEDULED campaigns accept edits."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str | None = None
    type: EmailType | None = None
    subject: str | None = None
    template_data: dict[str, Any] | None = None
    scheduled_at: datetime | None = None
    target_all: bool | None = None
    target_user_ids: list[str] | None = None

    @field_validator("type")
    @classmethod
    def marketing_only(cls, v: EmailType | None) -> EmailType | None:
        return _ensure_marketing(v)

    @field_validator("target_user_ids")
    @classmethod
    def dedupe_targets(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _dedupe(v)


class EmailCampaign(BaseModel):
    """Stored campaign record."""

    id: str
    name: str
    description: str | None = None
    type: EmailType
    status: CampaignStatus = CampaignStatus.DRAFT
    subject: str
    template_data: dict[str, Any] = Field(default_factory=dict)
    target_all: bool = False
    target_user_ids: list[str] = Field(default_factory=list)
    total_recipients: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    open_count: int = 0
    click_count: int = 0
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    error: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Logs -----------------------------------------------------------------------
class EmailLog(BaseModel):
    """One delivery attempt."""

    id: str
    campaign_id: str | None = None
    user_id: str
    email: str
    type: EmailType
    subject: str
    status: EmailStatus
    reason: str | None = None
    error: str | None = None
    message_id: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    bounced_at: datetime | None = None


# Pipeline values ------------------------------------------------------------
@dataclass(frozen=True)
class Recipient:
    """A resolved recipient ready for policy evaluation and delivery."""

    user_id: str
    email: str
    template_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryAttempt:
    """Input to ``LogRecorder.record``."""

    user_id: str
    email: str
    type: EmailType
    subject: str
    status: EmailStatus
    campaign_id: str | None = None
    reason: str | None = None
    error: str | None = None
    message_id: str | None = None


@dataclass(frozen=True)
class DeliveryOutcome:
    """Terminal result of one recipient in a batch."""

    user_id: str
    status: EmailStatus
    reason: str | None = None
    error: str | None = None
    message_id: str | None = None
    log_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "message_id": self.message_id,
            "log_id": self.log_id,
        }


@dataclass(frozen=True)
class BatchResult:
    success: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failed + self.skipped

    @classmethod
    def from_outcomes(cls, outcomes: list[DeliveryOutcome]) -> BatchResult:
        statuses = [o.status for o in outcomes]
        return cls(
            success=statuses.count(EmailStatus.SENT),
            failed=statuses.count(EmailStatus.FAILED),
            skipped=statuses.count(EmailStatus.SKIPPED),
        )

    def as_dict(self) -> dict[str, int]:
        return {"success": self.success, "failed": self.failed, "skipped": self.skipped}
