"""Upstream API credential pool: selection, usage accounting and health states."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from llm.gemini import GeminiTransport
from llm.models import UpstreamErrorKind
from models.api_credential import ApiCredential
from models.enums import CredentialFailure, CredentialStatus
from services.crypto import decrypt_secret, encrypt_secret, fingerprint_secret
from services.errors import ConfigurationError, CredentialValidationError, DuplicateCredentialError

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 20
REACTIVATION_CANDIDATES = 5

KeyValidator = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class SelectedCredential:
    credential_id: str
    api_key: str
    source: str  # "user" or "house"


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _usage_today(today: str):
    """Requests counted for ``today``; a stale date stamp counts as zero."""
    return case((ApiCredential.daily_quota_date == today, ApiCredential.requests_today), else_=0)


def _under_quota(today: str):
    return or_(
        ApiCredential.daily_quota_date.is_(None),
        ApiCredential.daily_quota_date != today,
        ApiCredential.requests_today < int(settings.DAILY_KEY_QUOTA),
    )


def _selected(credential: ApiCredential) -> SelectedCredential:
    return SelectedCredential(
        credential_id=credential.id,
        api_key=decrypt_secret(credential.encrypted_key),
        source="user" if credential.user_id else "house",
    )


async def _first_active(
    db: AsyncSession,
    owner_condition,
    today: str,
    exclude: Sequence[str] = (),
) -> Optional[ApiCredential]:
    query = select(ApiCredential).where(
        owner_condition,
        ApiCredential.status == CredentialStatus.ACTIVE.value,
        _under_quota(today),
    )
    if exclude:
        query = query.where(ApiCredential.id.not_in(list(exclude)))
    result = await db.execute(
        query
        .order_by(ApiCredential.priority.asc(), _usage_today(today).asc(), ApiCredential.created_at.asc())
        .limit(1)
    )
    return result.scalars().first()


async def _reactivate_stale_rate_limited(
    db: AsyncSession,
    user_id: str,
    today: str,
    exclude: Sequence[str] = (),
) -> Optional[ApiCredential]:
    query = select(ApiCredential).where(
        or_(ApiCredential.user_id == user_id, ApiCredential.user_id.is_(None)),
        ApiCredential.status == CredentialStatus.RATE_LIMITED.value,
        or_(ApiCredential.daily_quota_date.is_(None), ApiCredential.daily_quota_date != today),
    )
    if exclude:
        query = query.where(ApiCredential.id.not_in(list(exclude)))
    result = await db.execute(
        query
        .order_by(ApiCredential.priority.asc(), ApiCredential.created_at.asc())
        .limit(REACTIVATION_CANDIDATES)
    )
    for candidate in result.scalars().all():
        reactivated = await db.execute(
            update(ApiCredential)
            .where(
                ApiCredential.id == candidate.id,
                ApiCredential.status == CredentialStatus.RATE_LIMITED.value,
            )
            .values(status=CredentialStatus.ACTIVE.value, requests_today=0, daily_quota_date=today)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if reactivated.rowcount:
            logger.info("Reactivated rate-limited credential %s for a new quota day", candidate.id)
            await db.refresh(candidate)
            return candidate
    return None


async def get_next_available_key(
    user_id: str,
    db: AsyncSession,
    exclude: Sequence[str] = (),
) -> Optional[SelectedCredential]:
    """Own active keys, then house keys, then stale rate-limited keys; None when exhausted.

    ``exclude`` lists credentials already tried for the current request.
    """
    today = _today()

    own = await _first_active(db, ApiCredential.user_id == user_id, today, exclude)
    if own is not None:
        return _selected(own)

    house = await _first_active(db, ApiCredential.user_id.is_(None), today, exclude)
    if house is not None:
        return _selected(house)

    recovered = await _reactivate_stale_rate_limited(db, user_id, today, exclude)
    if recovered is not None:
        return _selected(recovered)

    return None


async def get_best_user_key(user_id: str, db: AsyncSession) -> Optional[SelectedCredential]:
    """Single best user-owned key for ``free_user_key`` mode."""
    result = await db.execute(
        select(ApiCredential)
        .where(
            ApiCredential.user_id == user_id,
            ApiCredential.status.in_([CredentialStatus.ACTIVE.value, CredentialStatus.RATE_LIMITED.value]),
        )
        .order_by(
            # Healthy keys first, then by priority.
            case((ApiCredential.status == CredentialStatus.ACTIVE.value, 0), else_=1),
            ApiCredential.priority.asc(),
            ApiCredential.created_at.asc(),
        )
        .limit(1)
    )
    credential = result.scalars().first()
    return _selected(credential) if credential is not None else None


async def record_usage(credential_id: str, db: AsyncSession) -> None:
    """Atomic per-day increment; a new day restarts the counter at 1."""
    today = _today()
    await db.execute(
        update(ApiCredential)
        .where(ApiCredential.id == credential_id)
        .values(
            requests_today=case(
                (ApiCredential.daily_quota_date == today, ApiCredential.requests_today + 1),
                else_=1,
            ),
            daily_quota_date=today,
            last_used_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def mark_key_as_failed(credential_id: str, failure: CredentialFailure, db: AsyncSession) -> None:
    """Apply the health transition for a failed call."""
    now = _now()
    today = _today()
    statement = update(ApiCredential).where(ApiCredential.id == credential_id)

    if failure == CredentialFailure.INVALID_KEY:
        statement = statement.values(
            status=CredentialStatus.DEAD.value,
            last_error_at=now,
            last_error_type=failure.value,
        )
        logger.warning("Credential %s rejected by upstream; marked dead", credential_id)
    elif failure in (CredentialFailure.RATE_LIMIT, CredentialFailure.QUOTA_EXCEEDED):
        # Stamp the quota day so the key is only reactivated once a new day begins.
        statement = statement.where(ApiCredential.status != CredentialStatus.DEAD.value).values(
            status=CredentialStatus.RATE_LIMITED.value,
            requests_today=_usage_today(today),
            daily_quota_date=today,
            last_error_at=now,
            last_error_type=failure.value,
        )
        logger.warning("Credential %s hit %s; benched until tomorrow", credential_id, failure.value)
    elif failure in (CredentialFailure.MODEL_ERROR, CredentialFailure.TRANSIENT):
        statement = statement.values(last_error_at=now, last_error_type=failure.value)
        logger.info("Credential %s call failed with %s; status unchanged", credential_id, failure.value)
    else:
        raise ValueError(f"Unhandled credential failure: {failure!r}")

    await db.execute(statement.execution_options(synchronize_session=False))
    await db.commit()


def _validate_key_format(api_key: str) -> str:
    candidate = (api_key or "").strip()
    if len(candidate) < MIN_KEY_LENGTH or any(ch.isspace() for ch in candidate):
        raise CredentialValidationError("Invalid API key format")
    return candidate


async def _store_credential(
    db: AsyncSession,
    api_key: str,
    *,
    user_id: Optional[str],
    priority: int,
    validator: Optional[KeyValidator],
) -> ApiCredential:
    candidate = _validate_key_format(api_key)
    fingerprint = fingerprint_secret(candidate)

    existing = await db.execute(select(ApiCredential.id).where(ApiCredential.key_fingerprint == fingerprint))
    if existing.scalar_one_or_none():
        raise DuplicateCredentialError("API key already exists")

    check = validator or GeminiTransport().test_api_key
    if not await check(candidate):
        raise CredentialValidationError("API key is invalid or inactive")

    credential = ApiCredential(
        user_id=user_id,
        encrypted_key=encrypt_secret(candidate),
        key_fingerprint=fingerprint,
        key_prefix=candidate[:8],
        key_suffix=candidate[-4:],
        status=CredentialStatus.ACTIVE.value,
        priority=priority,
        requests_today=0,
    )
    db.add(credential)
    try:
        await db.commit()
    except IntegrityError as exc:
        # Same key stored concurrently, after the fingerprint check above.
        await db.rollback()
        raise DuplicateCredentialError("API key already exists") from exc
    await db.refresh(credential)
    logger.info("Stored %s credential %s", "user" if user_id else "house", credential.id)
    return credential


async def add_user_api_key(
    user_id: str,
    api_key: str,
    db: AsyncSession,
    validator: Optional[KeyValidator] = None,
) -> Dict[str, Any]:
    """Validate format, reject duplicates, make a live test call, then persist."""
    credential = await _store_credential(
        db,
        api_key,
        user_id=user_id,
        priority=int(settings.USER_KEY_PRIORITY),
        validator=validator,
    )
    return credential_view(credential)


async def add_house_api_key(
    api_key: str,
    db: AsyncSession,
    priority: Optional[int] = None,
    validator: Optional[KeyValidator] = None,
) -> Dict[str, Any]:
    credential = await _store_credential(
        db,
        api_key,
        user_id=None,
        priority=int(priority if priority is not None else settings.HOUSE_KEY_PRIORITY),
        validator=validator,
    )
    return credential_view(credential)


def credential_view(credential: ApiCredential) -> Dict[str, Any]:
    """Display form; the secret itself never leaves this module unmasked."""
    if credential.key_prefix and credential.key_suffix:
        masked = f"{credential.key_prefix}...{credential.key_suffix}"
    else:
        masked = "***"
    return {
        "id": credential.id,
        "masked_key": masked,
        "status": credential.status,
        "priority": credential.priority,
        "requests_today": credential.requests_today if credential.daily_quota_date == _today() else 0,
        "daily_quota_date": credential.daily_quota_date,
        "last_used_at": credential.last_used_at.isoformat() if credential.last_used_at else None,
        "last_error_type": credential.last_error_type,
        "created_at": credential.created_at.isoformat() if credential.created_at else None,
    }


async def list_user_keys(user_id: str, db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(ApiCredential)
        .where(ApiCredential.user_id == user_id)
        .order_by(ApiCredential.created_at.desc(), ApiCredential.id.desc())
        .execution_options(populate_existing=True)
    )
    return [credential_view(row) for row in result.scalars().all()]


async def delete_user_key(user_id: str, credential_id: str, db: AsyncSession) -> bool:
    """Owner-scoped delete; house keys and other users' keys are untouched."""
    result = await db.execute(
        delete(ApiCredential)
        .where(ApiCredential.id == credential_id, ApiCredential.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return bool(result.rowcount)


def failure_for_error_kind(kind: UpstreamErrorKind) -> CredentialFailure:
    """Translate an upstream error kind into the pool's failure classes."""
    if kind == UpstreamErrorKind.INVALID_CREDENTIAL:
        return CredentialFailure.INVALID_KEY
    if kind == UpstreamErrorKind.RATE_LIMITED:
        return CredentialFailure.RATE_LIMIT
    if kind == UpstreamErrorKind.QUOTA:
        return CredentialFailure.QUOTA_EXCEEDED
    if kind == UpstreamErrorKind.MODEL:
        return CredentialFailure.MODEL_ERROR
    return CredentialFailure.TRANSIENT


async def list_house_keys(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(ApiCredential)
        .where(ApiCredential.user_id.is_(None))
        .order_by(ApiCredential.priority.asc(), ApiCredential.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return [credential_view(row) for row in result.scalars().all()]


async def pool_summary(db: AsyncSession) -> Dict[str, int]:
    """Count house keys per status, with every status present."""
    result = await db.execute(
        select(ApiCredential.status, func.count(ApiCredential.id))
        .where(ApiCredential.user_id.is_(None))
        .group_by(ApiCredential.status)
    )
    summary = {status.value: 0 for status in CredentialStatus}
    for status, count in result.all():
        summary[status] = count
    return summary


async def _house_key(credential_id: str, db: AsyncSession) -> ApiCredential:
    result = await db.execute(
        select(ApiCredential)
        .where(ApiCredential.id == credential_id, ApiCredential.user_id.is_(None))
        .execution_options(populate_existing=True)
    )
    credential = result.scalar_one_or_none()
    if credential is None:
        raise ConfigurationError("API key not found")
    return credential


async def update_house_key(
    credential_id: str,
    db: AsyncSession,
    priority: Optional[int] = None,
    status: Optional[CredentialStatus] = None,
) -> Dict[str, Any]:
    """Change a house key's priority or status.

    A dead key stays dead: the status guard is part of the UPDATE, so a
    concurrent failure that kills the key cannot be overwritten here.
    """
    values: Dict[str, Any] = {}
    if priority is not None:
        values["priority"] = int(priority)
    if status is not None:
        status = CredentialStatus(status)
        values["status"] = status.value
        if status == CredentialStatus.ACTIVE:
            values["last_error_type"] = None
        elif status == CredentialStatus.RATE_LIMITED:
            today = _today()
            values["requests_today"] = _usage_today(today)
            values["daily_quota_date"] = today
    if not values:
        raise ValueError("priority or status is required")

    result = await db.execute(
        update(ApiCredential)
        .where(
            ApiCredential.id == credential_id,
            ApiCredential.user_id.is_(None),
            ApiCredential.status != CredentialStatus.DEAD.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        await db.rollback()
        await _house_key(credential_id, db)
        raise CredentialValidationError("Dead API keys cannot be changed. Add a new key instead.")
    await db.commit()

    credential = await _house_key(credential_id, db)
    logger.info("house key %s updated: %s", credential_id, values)
    return credential_view(credential)


async def delete_house_key(credential_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        delete(ApiCredential)
        .where(ApiCredential.id == credential_id, ApiCredential.user_id.is_(None))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("house key %s deleted", credential_id)
    return bool(result.rowcount)
