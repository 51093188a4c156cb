# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Expansion of a campaign's targeting rule into concrete recipients.

``RecipientResolver.resolve`` turns either ``target_all`` (every user with a
preference row that did not unsubscribe from everything) or an explicit ID
list into an ordered list of ``Recipient`` values. Identities that no longer
exist or have no address are dropped without writing a log row; an identity
service that cannot be reached at all aborts resolution with
``ResolutionFailed``.
"""

from __future__ import annotations

import asyncio
from typing import Any

from .collaborators import IdentityLookup, UserRecord
from .concurrency import gather_or_cancel
from .errors import IdentityUnavailable, ResolutionError, ResolutionFailed
from .logger import get_logger
from .models import EmailCampaign, Recipient
from .persistence import Persistence


class RecipientResolver:
    """Resolve campaign targets through the identity collaborator.

    Lookups run concurrently, at most ``pool_size`` at a time; the result
    keeps the targeting order.
    """

    def __init__(
        self,
        persistence: Persistence,
        identity: IdentityLookup,
        *,
        pool_size: int = 10,
        logger=None,
    ):
        self.persistence = persistence
        self.identity = identity
        self.pool_size = max(1, int(pool_size))
        self.logger = logger or get_logger("EmailDispatch.resolver")

    async def target_ids(self, campaign: EmailCampaign) -> list[str]:
        """Return the deduplicated user IDs targeted by ``campaign``."""
        if campaign.target_all:
            ids = await self.persistence.list_subscribed_user_ids()
        else:
            ids = campaign.target_user_ids
        return list(dict.fromkeys(i for i in ids if i))

    async def resolve(self, campaign: EmailCampaign) -> list[Recipient]:
        """Return the reachable recipients of ``campaign`` in targeting order.

        Raises:
            ResolutionFailed: The identity service is unreachable.
        """
        user_ids = await self.target_ids(campaign)
        semaphore = asyncio.Semaphore(self.pool_size)

        async def lookup(user_id: str) -> UserRecord | None:
            async with semaphore:
                try:
                    return await self.identity.get_user(user_id)
                except ResolutionError as exc:
                    self.logger.debug("Dropping recipient %s: %s", user_id, exc.code)
                    return None
                except IdentityUnavailable:
                    raise
                except Exception as exc:
                    self.logger.warning("Dropping recipient %s: identity lookup failed: %s", user_id, exc)
                    return None

        try:
            users = await gather_or_cancel(lookup(uid) for uid in user_ids)
        except IdentityUnavailable as exc:
            raise ResolutionFailed(f"Identity lookup unavailable: {exc}") from exc

        recipients: list[Recipient] = []
        for user_id, user in zip(user_ids, users):
            if user is None or not user.email:
                continue
            recipients.append(
                Recipient(
                    user_id=user_id,
                    email=user.email,
                    template_data=self.template_data_for(campaign.template_data, user),
                )
            )
        self.logger.info(
            "Resolved %d of %d targeted recipients for campaign %s", len(recipients), len(user_ids), campaign.id
        )
        return recipients

    @staticmethod
    def template_data_for(base: dict[str, Any], user: UserRecord) -> dict[str, Any]:
        data = dict(base or {})
        data["userName"] = user.display_name
        return data
