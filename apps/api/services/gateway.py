"""Request router: session config → prompt → entitlement → upstream → audit.

One call to :func:`process_request` walks a single question through the
states in :class:`RouterState`. Expected failures (missing session, no
entitlement, exhausted pool, upstream errors) come back as a failed
``GatewayResponse`` with a short reason; anything unexpected is logged and
reported with a generic message. Nothing here raises to the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import require_openrouter_api_key, settings
from llm.gemini import GeminiTransport
from llm.models import GenerationConfig, UpstreamCallError, UpstreamErrorKind, UpstreamResult, UpstreamTransport
from llm.openrouter import OpenRouterTransport
from models.enums import LedgerEntryType, RequestMode, RequestStatus
from models.extension_session import ExtensionSession
from models.llm_request import ChatHistory, LLMRequest
from services.credential_pool import (
    SelectedCredential,
    failure_for_error_kind,
    get_best_user_key,
    get_next_available_key,
    mark_key_as_failed,
    record_usage,
)
from services.errors import LedgerConsistencyError
from services.knowledge import get_session_files
from services.ledger import add_credits, can_make_request, deduct_credits
from services.prompt_composer import ComposedPrompt, FewShotExample, coerce_answer_mode, compose

logger = logging.getLogger(__name__)

PREMIUM_PROVIDER = "openrouter"
UNKNOWN_MODE = "unknown"

SESSION_NOT_FOUND = "Session not found or inactive"
GENERIC_FAILURE = "Something went wrong while processing your question. Please try again."
NO_USER_KEY = "No active API key found. Please add your Gemini API key in settings."
POOL_EMPTY = "No available API keys in pool. Please try again later or use premium mode."
POOL_EXHAUSTED = "All API keys in pool are unavailable. Please try premium mode."
PREMIUM_UNAVAILABLE = "Premium mode is not available right now."

_ERROR_MESSAGES = {
    UpstreamErrorKind.INVALID_CREDENTIAL: "Your API key was rejected by the provider. Please add a new key.",
    UpstreamErrorKind.RATE_LIMITED: "Your API key is rate limited. Please wait a moment and try again.",
    UpstreamErrorKind.QUOTA: "Your API key has used up its daily quota.",
    UpstreamErrorKind.MODEL: "The model could not answer this question.",
    UpstreamErrorKind.TRANSIENT: "The AI provider did not respond. Please try again.",
}


class RouterState(str, enum.Enum):
    RECEIVED = "received"
    CONFIG_LOADED = "config_loaded"
    ENTITLEMENT_CHECKED = "entitlement_checked"
    FREE_USER_KEY = "free_user_key"
    FREE_POOL = "free_pool"
    PREMIUM = "premium"
    UPSTREAM_CALLED = "upstream_called"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LOGGED = "logged"


@dataclass
class GatewayResponse:
    success: bool
    answer: Optional[str] = None
    error: Optional[str] = None
    request_id: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    tokens_used: Optional[int] = None
    credits_deducted: int = 0
    cached: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "answer": self.answer,
            "error": self.error,
            "request_id": self.request_id,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "tokens_used": self.tokens_used,
            "credits_deducted": self.credits_deducted,
            "cached": self.cached,
        }


@dataclass(frozen=True)
class SessionConfig:
    """Plain copy of the session row, safe to use after commits."""

    id: str
    session_id: str
    request_mode: str
    provider: Optional[str]
    model: Optional[str]
    answer_mode: Optional[str]
    use_custom_prompt: bool
    system_prompt: Optional[str]
    knowledge_context: Optional[str]
    knowledge_file_ids: List[str]


@dataclass
class RoutedRequest:
    user_id: str
    session_id: str
    question: str
    mode: RequestMode
    provider: str
    model: str
    prompt: ComposedPrompt
    config: GenerationConfig


@dataclass
class DispatchOutcome:
    result: Optional[UpstreamResult] = None
    error: Optional[str] = None
    attempts: int = 0
    credits_deducted: int = 0
    tried: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result is not None


def _trace(state: RouterState, user_id: str, session_id: str, **extra: Any) -> None:
    if extra:
        logger.debug("gateway %s user=%s session=%s %s", state.value, user_id, session_id, extra)
    else:
        logger.debug("gateway %s user=%s session=%s", state.value, user_id, session_id)


async def _load_session(user_id: str, session_id: str, db: AsyncSession) -> Optional[SessionConfig]:
    result = await db.execute(
        select(ExtensionSession).where(
            ExtensionSession.session_id == session_id,
            ExtensionSession.user_id == user_id,
            ExtensionSession.is_active.is_(True),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return SessionConfig(
        id=row.id,
        session_id=row.session_id,
        request_mode=row.request_mode,
        provider=row.provider,
        model=row.model,
        answer_mode=row.answer_mode,
        use_custom_prompt=bool(row.use_custom_prompt),
        system_prompt=row.system_prompt,
        knowledge_context=row.knowledge_context,
        knowledge_file_ids=list(row.knowledge_file_ids or []),
    )


async def _stamp_last_used(session: SessionConfig, db: AsyncSession) -> None:
    await db.execute(
        update(ExtensionSession)
        .where(ExtensionSession.id == session.id)
        .values(last_used_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()


def _generation_config(prompt: ComposedPrompt) -> GenerationConfig:
    return GenerationConfig(
        temperature=settings.UPSTREAM_TEMPERATURE,
        max_output_tokens=settings.UPSTREAM_MAX_OUTPUT_TOKENS,
        thinking_level=prompt.thinking.thinking_level,
        thinking_budget=prompt.thinking.thinking_budget,
        cache_enabled=prompt.caching.enabled,
        cache_ttl_seconds=prompt.caching.ttl_seconds if prompt.caching.enabled else None,
    )


async def _call_upstream(transport: UpstreamTransport, api_key: str, routed: RoutedRequest) -> UpstreamResult:
    try:
        return await asyncio.wait_for(
            transport.generate(
                api_key,
                routed.model,
                routed.prompt.system_prompt,
                routed.prompt.user_parts,
                routed.config,
            ),
            timeout=float(settings.UPSTREAM_TIMEOUT_SECONDS),
        )
    except asyncio.TimeoutError as exc:
        raise UpstreamCallError(UpstreamErrorKind.TRANSIENT, "Upstream call timed out") from exc


async def _attempt_with_credential(
    transport: UpstreamTransport,
    credential: SelectedCredential,
    routed: RoutedRequest,
    db: AsyncSession,
) -> UpstreamResult:
    """One call with one credential; health and usage are updated either way."""
    try:
        result = await _call_upstream(transport, credential.api_key, routed)
    except UpstreamCallError as exc:
        logger.warning(
            "Upstream call failed with credential %s (%s): %s",
            credential.credential_id,
            exc.kind.value,
            exc.message,
        )
        await mark_key_as_failed(credential.credential_id, failure_for_error_kind(exc.kind), db)
        raise
    _trace(RouterState.UPSTREAM_CALLED, routed.user_id, routed.session_id, credential=credential.credential_id)
    await record_usage(credential.credential_id, db)
    return result


async def _dispatch_free_user_key(routed: RoutedRequest, transport: UpstreamTransport, db: AsyncSession) -> DispatchOutcome:
    credential = await get_best_user_key(routed.user_id, db)
    if credential is None:
        return DispatchOutcome(error=NO_USER_KEY)

    # Exactly one attempt: a user's own keys are never rotated automatically.
    try:
        result = await _attempt_with_credential(transport, credential, routed, db)
    except UpstreamCallError as exc:
        return DispatchOutcome(error=_ERROR_MESSAGES[exc.kind], attempts=1, tried=[credential.credential_id])
    return DispatchOutcome(result=result, attempts=1, tried=[credential.credential_id])


async def _dispatch_free_pool(routed: RoutedRequest, transport: UpstreamTransport, db: AsyncSession) -> DispatchOutcome:
    outcome = DispatchOutcome()
    max_attempts = max(int(settings.FREE_POOL_MAX_ATTEMPTS), 1)

    while outcome.attempts < max_attempts:
        credential = await get_next_available_key(routed.user_id, db, exclude=outcome.tried)
        if credential is None:
            outcome.error = POOL_EMPTY if not outcome.attempts else POOL_EXHAUSTED
            return outcome

        outcome.attempts += 1
        outcome.tried.append(credential.credential_id)
        try:
            outcome.result = await _attempt_with_credential(transport, credential, routed, db)
        except UpstreamCallError:
            continue
        return outcome

    outcome.error = POOL_EXHAUSTED
    return outcome


async def _refund_premium(routed: RoutedRequest, credits: int, db: AsyncSession) -> None:
    await add_credits(
        routed.user_id,
        credits,
        f"Credit refund - premium request failed ({routed.model})",
        db,
        entry_type=LedgerEntryType.REFUND,
    )


async def _dispatch_premium(routed: RoutedRequest, transport: UpstreamTransport, db: AsyncSession) -> DispatchOutcome:
    try:
        api_key = require_openrouter_api_key()
    except ValueError:
        logger.error("Premium request rejected: OPENROUTER_API_KEY is not configured")
        return DispatchOutcome(error=PREMIUM_UNAVAILABLE)

    cost = int(settings.PREMIUM_REQUEST_COST)
    try:
        await deduct_credits(routed.user_id, cost, f"Premium LLM request - {routed.model}", db)
    except LedgerConsistencyError as exc:
        return DispatchOutcome(error=exc.user_message)

    try:
        result = await _call_upstream(transport, api_key, routed)
    except UpstreamCallError as exc:
        logger.warning("Premium upstream call failed (%s): %s", exc.kind.value, exc.message)
        await _refund_premium(routed, cost, db)
        return DispatchOutcome(error=_ERROR_MESSAGES.get(exc.kind, GENERIC_FAILURE), attempts=1)
    except Exception:
        await _refund_premium(routed, cost, db)
        raise

    _trace(RouterState.UPSTREAM_CALLED, routed.user_id, routed.session_id, provider=PREMIUM_PROVIDER)
    return DispatchOutcome(result=result, attempts=1, credits_deducted=cost)


async def _dispatch(
    routed: RoutedRequest,
    db: AsyncSession,
    free_transport: UpstreamTransport,
    premium_transport: UpstreamTransport,
) -> DispatchOutcome:
    if routed.mode == RequestMode.FREE_USER_KEY:
        _trace(RouterState.FREE_USER_KEY, routed.user_id, routed.session_id)
        return await _dispatch_free_user_key(routed, free_transport, db)
    if routed.mode == RequestMode.FREE_POOL:
        _trace(RouterState.FREE_POOL, routed.user_id, routed.session_id)
        return await _dispatch_free_pool(routed, free_transport, db)
    if routed.mode == RequestMode.PREMIUM:
        _trace(RouterState.PREMIUM, routed.user_id, routed.session_id)
        return await _dispatch_premium(routed, premium_transport, db)
    raise ValueError(f"Unhandled request mode: {routed.mode!r}")


async def _persist_record(
    routed: RoutedRequest,
    outcome: DispatchOutcome,
    elapsed_ms: int,
    db: AsyncSession,
) -> LLMRequest:
    result = outcome.result
    record = LLMRequest(
        user_id=routed.user_id,
        session_id=routed.session_id,
        request_mode=routed.mode.value,
        provider=routed.provider,
        model=routed.model,
        system_prompt=routed.prompt.system_prompt,
        knowledge_context=routed.prompt.knowledge_context or None,
        file_ids=routed.prompt.file_ids or None,
        question=routed.question,
        answer=result.text if result is not None else None,
        status=RequestStatus.SUCCESS.value if result is not None else RequestStatus.FAILED.value,
        error_message=outcome.error if result is None else None,
        attempts=outcome.attempts,
        input_tokens=result.input_tokens if result is not None else None,
        output_tokens=result.output_tokens if result is not None else None,
        total_tokens=result.total_tokens if result is not None else None,
        cost_credits=outcome.credits_deducted,
        cached=bool(result is not None and result.cached),
        response_time_ms=elapsed_ms,
    )
    db.add(record)
    await db.flush()

    if result is not None:
        db.add(
            ChatHistory(
                user_id=routed.user_id,
                session_id=routed.session_id,
                llm_request_id=record.id,
                question=routed.question,
                answer=result.text,
                answer_mode=routed.prompt.answer_mode.value,
                system_prompt=routed.prompt.system_prompt,
                user_prompt=routed.prompt.user_prompt,
            )
        )
    await db.commit()
    return record


async def _persist_internal_failure(
    user_id: str,
    session_id: str,
    question: str,
    request_mode: Optional[RequestMode],
    routed: Optional[RoutedRequest],
    started: float,
    db: AsyncSession,
) -> None:
    """Audit a request that died on an unexpected error, whatever stage it reached."""
    try:
        await db.rollback()
        if routed is not None:
            await _persist_record(routed, DispatchOutcome(error=GENERIC_FAILURE), _elapsed_ms(started), db)
            return
        db.add(
            LLMRequest(
                user_id=user_id,
                session_id=session_id,
                request_mode=request_mode.value if request_mode is not None else UNKNOWN_MODE,
                question=question,
                status=RequestStatus.FAILED.value,
                error_message=GENERIC_FAILURE,
                attempts=0,
                cost_credits=0,
                response_time_ms=_elapsed_ms(started),
            )
        )
        await db.commit()
    except Exception:
        logger.exception("Could not audit failed gateway request for user %s", user_id)
        await db.rollback()


async def _audit(routed: RoutedRequest, outcome: DispatchOutcome, started: float, db: AsyncSession) -> Optional[str]:
    """Persist the request record; a failure here never changes the outcome."""
    try:
        record = await _persist_record(routed, outcome, _elapsed_ms(started), db)
    except Exception:
        logger.exception(
            "Could not audit gateway request for user %s session %s (success=%s, credits=%s)",
            routed.user_id,
            routed.session_id,
            outcome.succeeded,
            outcome.credits_deducted,
        )
        await db.rollback()
        return None
    _trace(RouterState.LOGGED, routed.user_id, routed.session_id, request_id=record.id)
    return record.id


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def process_request(
    user_id: str,
    session_id: str,
    question: str,
    db: AsyncSession,
    few_shot_examples: Optional[Sequence[FewShotExample]] = None,
    output_format: Optional[str] = None,
    free_transport: Optional[UpstreamTransport] = None,
    premium_transport: Optional[UpstreamTransport] = None,
) -> GatewayResponse:
    """Route one question according to the session's request mode."""
    started = time.monotonic()
    mode: Optional[RequestMode] = None
    routed: Optional[RoutedRequest] = None
    _trace(RouterState.RECEIVED, user_id, session_id)

    try:
        session = await _load_session(user_id, session_id, db)
        if session is None:
            return GatewayResponse(success=False, error=SESSION_NOT_FOUND)
        try:
            mode = RequestMode(session.request_mode)
        except ValueError:
            logger.error("Session %s has unknown request mode %r", session_id, session.request_mode)
            return GatewayResponse(success=False, error="Invalid request mode")
        _trace(RouterState.CONFIG_LOADED, user_id, session_id, mode=mode.value)

        await _stamp_last_used(session, db)

        files = await get_session_files(session.session_id, user_id, db, session.knowledge_file_ids)
        model = session.model or settings.DEFAULT_MODEL
        prompt = compose(
            question=question,
            answer_mode=coerce_answer_mode(session.answer_mode),
            model=model,
            use_custom_prompt=session.use_custom_prompt,
            custom_prompt=session.system_prompt,
            manual_context=session.knowledge_context,
            files=files,
            few_shot_examples=few_shot_examples,
            output_format=output_format,
        )

        entitlement = await can_make_request(user_id, mode, db)
        if not entitlement.allowed:
            _trace(RouterState.FAILED, user_id, session_id, reason="entitlement")
            return GatewayResponse(success=False, error=entitlement.reason)
        _trace(RouterState.ENTITLEMENT_CHECKED, user_id, session_id)

        routed = RoutedRequest(
            user_id=user_id,
            session_id=session.session_id,
            question=question,
            mode=mode,
            provider=PREMIUM_PROVIDER if mode == RequestMode.PREMIUM else (session.provider or settings.DEFAULT_PROVIDER),
            model=model,
            prompt=prompt,
            config=_generation_config(prompt),
        )

        outcome = await _dispatch(
            routed,
            db,
            free_transport or GeminiTransport(),
            premium_transport or OpenRouterTransport(),
        )
    except Exception:
        logger.exception("Gateway request failed for user %s session %s", user_id, session_id)
        await _persist_internal_failure(user_id, session_id, question, mode, routed, started, db)
        return GatewayResponse(success=False, error=GENERIC_FAILURE)

    _trace(
        RouterState.SUCCEEDED if outcome.succeeded else RouterState.FAILED,
        user_id,
        session_id,
        attempts=outcome.attempts,
    )
    request_id = await _audit(routed, outcome, started, db)

    if not outcome.succeeded:
        return GatewayResponse(success=False, error=outcome.error, request_id=request_id)

    result = outcome.result
    return GatewayResponse(
        success=True,
        answer=result.text,
        request_id=request_id,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        tokens_used=result.total_tokens,
        credits_deducted=outcome.credits_deducted,
        cached=result.cached,
    )
