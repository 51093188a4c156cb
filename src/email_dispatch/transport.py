# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP implementation of the ``Transport`` collaborator.

Messages are built as ``email.message.EmailMessage`` with an HTML body and a
locally generated ``Message-ID``, which is returned to the caller as the
provider message id and later matches provider callbacks.

SMTP failures are mapped onto the transport error taxonomy:

- 530 / 534 / 535 and authentication errors: ``TransportAuthFailure``
- timeouts: ``TransportTimeout``
- other 5xx replies and refused recipients: ``TransportRejected``
- everything else (4xx, network errors): ``TransportError``
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formatdate, make_msgid, parseaddr

import aiosmtplib

from .errors import TransportAuthFailure, TransportError, TransportRejected, TransportTimeout
from .smtp_pool import SMTPPool

AUTH_FAILURE_CODES = frozenset({530, 534, 535})


def _smtp_code(exc: Exception) -> int | None:
    code = getattr(exc, "code", None) or getattr(exc, "smtp_code", None)
    if code is None and isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        code = getattr(exc.recipients[0], "code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def classify_smtp_error(exc: Exception) -> TransportError:
    """Translate an aiosmtplib / network exception into a ``TransportError``."""
    code = _smtp_code(exc)
    detail = f"{exc} (SMTP {code})" if code else str(exc) or exc.__class__.__name__
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError) or code in AUTH_FAILURE_CODES:
        return TransportAuthFailure(detail)
    if isinstance(exc, (aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return TransportTimeout(detail)
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) or (code is not None and 500 <= code < 600):
        return TransportRejected(detail)
    return TransportError(detail)


class SmtpTransport:
    """Send rendered messages through a pooled SMTP connection."""

    def __init__(self, pool: SMTPPool):
        self.pool = pool

    @staticmethod
    def build_message(to: str, subject: str, html: str, *, sender: str, reply_to: str | None = None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=False)
        domain = parseaddr(sender)[1].partition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=domain)
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        return msg

    async def send(self, to: str, subject: str, html: str, *, sender: str, reply_to: str | None = None) -> str:
        """Deliver the message and return its Message-ID.

        Raises:
            TransportError: The provider did not accept the message.
        """
        msg = self.build_message(to, subject, html, sender=sender, reply_to=reply_to)
        try:
            async with self.pool.connection() as smtp:
                await smtp.send_message(msg)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            raise classify_smtp_error(exc) from exc
        return msg["Message-ID"].strip("<>")
