"""Explicit transaction boundary for ledger and voucher mutations."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class UnitOfWork:
    """Commit everything done inside the block, or nothing.

    Any transaction already open on the session is committed first, so the
    unit starts from a fresh snapshot.

    Conditional ``UPDATE ... WHERE counter >= n`` statements executed inside
    the block provide the read-check-write atomicity; the unit only guarantees
    that the counter change and its ledger rows land together.

        async with UnitOfWork(db) as uow:
            await uow.session.execute(...)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def __aenter__(self) -> "UnitOfWork":
        if self.session.in_transaction():
            await self.session.commit()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        if exc_type is None:
            await self.session.commit()
            return None
        logger.debug("Rolling back unit of work after %s", exc_type.__name__)
        await self.session.rollback()
        return None
