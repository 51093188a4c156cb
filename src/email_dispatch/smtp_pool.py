# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio-friendly pool of SMTP connections to a single provider.

Batch dispatch runs every recipient in its own asyncio task, so connections
are not tied to tasks: a task borrows an idle connection for the duration of
one send and gives it back. Idle connections are reused while they are
younger than ``ttl`` and answer a NOOP; anything else is closed and replaced.

Example:
    Sending through the pool::

        pool = SMTPPool("smtp.example.com", 587, "user", "secret", use_tls=True)
        async with pool.connection() as smtp:
            await smtp.send_message(message)

        # Periodically
        await pool.cleanup()
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

from .logger import get_logger


class SMTPPool:
    """Bounded pool of reusable aiosmtplib connections.

    Attributes:
        ttl: Maximum age in seconds of an idle connection before it is closed.
        max_idle: Maximum number of idle connections kept for reuse.
        idle: Idle connections as ``(smtp, last_used)`` pairs.
        lock: Asyncio lock guarding ``idle``.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool = True,
        ttl: int = 300,
        max_idle: int = 10,
        connect_timeout: float = 15.0,
    ):
        """Initialize the pool for one SMTP server.

        Args:
            host: SMTP server hostname or IP address.
            port: SMTP server port (465 implies implicit TLS when ``use_tls``).
            user: Username for SMTP authentication, or None for no auth.
            password: Password for SMTP authentication, or None for no auth.
            use_tls: Direct TLS on 465, STARTTLS on other ports.
            ttl: Seconds an idle connection stays reusable. Defaults to 300.
            max_idle: Idle connections kept after use; extra ones are closed.
            connect_timeout: Upper bound for connect plus login.
        """
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.ttl = ttl
        self.max_idle = max(0, int(max_idle))
        self.connect_timeout = connect_timeout
        self.idle: list[tuple[aiosmtplib.SMTP, float]] = []
        self.lock = asyncio.Lock()
        self.logger = get_logger("EmailDispatch.smtp")

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        Raises:
            asyncio.TimeoutError: Connect plus login exceeded ``connect_timeout``.
            aiosmtplib.SMTPException: Connection or authentication failed.
        """
        if self.use_tls and self.port == 465:
            smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=False, use_tls=True, timeout=10.0)
        elif self.use_tls:
            smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=True, use_tls=False, timeout=10.0)
        else:
            smtp = aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=False, use_tls=False, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """NOOP health check; any error counts as a dead connection."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            self.logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def acquire(self) -> aiosmtplib.SMTP:
        """Return a healthy idle connection or open a new one."""
        while True:
            async with self.lock:
                entry = self.idle.pop() if self.idle else None
            if entry is None:
                return await self._connect()
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._close(smtp)

    async def release(self, smtp: aiosmtplib.SMTP, *, broken: bool = False) -> None:
        """Give a connection back; broken or surplus connections are closed."""
        if not broken:
            async with self.lock:
                if len(self.idle) < self.max_idle:
                    self.idle.append((smtp, time.time()))
                    return
        await self._close(smtp)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection for the body of the ``async with`` block."""
        smtp = await self.acquire()
        try:
            yield smtp
        except BaseException:
            await self.release(smtp, broken=True)
            raise
        else:
            await self.release(smtp)

    async def cleanup(self) -> None:
        """Close idle connections that expired or fail the health check."""
        now = time.time()
        async with self.lock:
            items, self.idle = self.idle, []

        keep: list[tuple[aiosmtplib.SMTP, float]] = []
        for smtp, last_used in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                keep.append((smtp, last_used))
            else:
                await self._close(smtp)

        async with self.lock:
            self.idle.extend(keep)

    async def close_all(self) -> None:
        """Close every idle connection, used on shutdown."""
        async with self.lock:
            items, self.idle = self.idle, []
        for smtp, _last_used in items:
            await self._close(smtp)
