# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Interfaces of the external collaborators used by the dispatch pipeline.

The pipeline never talks to an identity provider, a template engine or a
mail provider directly. It depends on the three protocols below; the
default adapters live in ``identity.py``, ``templates.py`` and
``transport.py``, and tests substitute hand-written doubles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class UserRecord:
    """Identity returned by an ``IdentityLookup``."""

    user_id: str
    email: str | None
    first_name: str | None = None
    username: str | None = None

    @property
    def display_name(self) -> str:
        """First name, else username, else the local part of the address."""
        if self.first_name:
            return self.first_name
        if self.username:
            return self.username
        return (self.email or "").split("@", 1)[0]


@runtime_checkable
class IdentityLookup(Protocol):
    async def get_user(self, user_id: str) -> UserRecord:
        """Return the identity or raise IdentityNotFound / IdentityUnavailable."""
        ...


@runtime_checkable
class TemplateRenderer(Protocol):
    def render(self, template_type: str, data: dict[str, Any]) -> str:
        """Return the HTML body or raise InvalidTemplate."""
        ...


@runtime_checkable
class Transport(Protocol):
    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        sender: str,
        reply_to: str | None = None,
    ) -> str:
        """Hand the message to the provider and return its message id.

        Raises a ``TransportError`` subclass when the provider does not accept
        the message.
        """
        ...
