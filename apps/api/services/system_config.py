"""Read-mostly key/value lookups backed by the ``system_config`` table."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.system_config import SystemConfig

BALANCE_TO_CREDIT_RATE_KEY = "balance_to_credit_rate"


async def get_config_value(key: str, db: AsyncSession) -> Optional[str]:
    result = await db.execute(select(SystemConfig.value).where(SystemConfig.key == key))
    return result.scalar_one_or_none()


async def get_decimal_config(key: str, db: AsyncSession) -> Optional[Decimal]:
    """Return the value as a Decimal, or None when missing or not numeric."""
    raw = await get_config_value(key, db)
    if raw is None:
        return None
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


async def set_config_value(
    key: str,
    value: str,
    db: AsyncSession,
    description: Optional[str] = None,
) -> SystemConfig:
    result = await db.execute(select(SystemConfig).where(SystemConfig.key == key))
    row = result.scalar_one_or_none()
    if row is None:
        row = SystemConfig(key=key, value=str(value), description=description)
        db.add(row)
    else:
        row.value = str(value)
        if description is not None:
            row.description = description
    await db.commit()
    return row
