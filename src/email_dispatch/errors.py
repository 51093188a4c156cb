# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy of the dispatch pipeline.

Every exception carries a machine-readable ``code`` so that log rows, API
responses and campaign records can report the cause without re-deriving it.

- ``TransportError`` and subclasses: provider failures. Logged as FAILED,
  never abort a batch.
- ``ResolutionError``: an identity cannot be resolved. The recipient is
  silently excluded from the batch.
- ``FatalPipelineError`` and subclasses: abort the operation and are
  surfaced to the caller. A claimed campaign is moved to FAILED.

Policy denials are not exceptions: they are ``Decision`` values carrying a
``SkipReason`` (see ``policy.py``).
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for all errors raised by the dispatch engine."""

    code = "dispatch-error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


# Transport ------------------------------------------------------------------
class TransportError(DispatchError):
    """The provider did not accept the message."""

    code = "provider-error"


class TransportTimeout(TransportError):
    code = "provider-timeout"


class TransportRejected(TransportError):
    code = "provider-rejected"


class TransportAuthFailure(TransportError):
    code = "provider-auth-failure"


# Templates ------------------------------------------------------------------
class InvalidTemplate(DispatchError):
    """Unknown template type or missing required template data."""

    code = "invalid-template"


# Identity -------------------------------------------------------------------
class ResolutionError(DispatchError):
    """A single identity could not be resolved to a reachable address."""

    code = "recipient-unresolvable"


class IdentityNotFound(ResolutionError):
    code = "identity-not-found"


class IdentityUnavailable(DispatchError):
    """The identity lookup service cannot be reached at all."""

    code = "identity-unavailable"


# Validation -----------------------------------------------------------------
class InvalidSettings(DispatchError):
    code = "invalid-settings"


class InvalidCampaign(DispatchError):
    code = "invalid-campaign"


class UnknownEvent(DispatchError):
    code = "unknown-event"


# Fatal ----------------------------------------------------------------------
class FatalPipelineError(DispatchError):
    """Aborts the current operation and is reported to the trigger."""

    code = "fatal-pipeline-error"


class StoreUnavailable(FatalPipelineError):
    code = "store-unavailable"


class WorkQueueFull(FatalPipelineError):
    code = "queue-full"


class ResolutionFailed(FatalPipelineError):
    """Recipient resolution could not be performed for the whole campaign."""

    code = "resolution-failed"


class CampaignNotFound(FatalPipelineError):
    code = "campaign-not-found"


class CampaignAlreadySending(FatalPipelineError):
    code = "already-sending"


class CampaignAlreadySent(FatalPipelineError):
    code = "already-sent"


class InvalidCampaignState(FatalPipelineError):
    """The requested transition is not allowed from the current status."""

    code = "invalid-campaign-state"

    def __init__(self, campaign_id: str, status: str, action: str):
        super().__init__(f"Campaign '{campaign_id}' is {status}; cannot {action}")
        self.campaign_id = campaign_id
        self.status = status
        self.action = action
