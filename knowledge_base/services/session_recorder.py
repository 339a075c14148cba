"""
knowledge_base/services/session_recorder.py

Records embedding / search / chat calls as API sessions and aggregates
usage statistics from them.

Callers own their session: ``start_session`` returns a SessionHandle that
is passed to every later call, so concurrent operations never write into
each other's session. Finished sessions are persisted in the
``api_sessions`` namespace and pruned by age and by count.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from knowledge_base.core.config import settings
from knowledge_base.core.constants import NS_SESSIONS, SESSIONS_ENABLED_SETTING_KEY
from knowledge_base.core.exceptions import StorageError
from knowledge_base.core.logger import get_logger
from knowledge_base.embedder.registry import estimate_tokens
from knowledge_base.models.entities import ApiSession, SessionEvent, now_ms
from knowledge_base.storage.base import StorageBackend

logger = get_logger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class SessionHandle:
    """Caller-owned reference to an open session."""

    session: ApiSession

    @property
    def id(self) -> str:
        return self.session.id


class SessionRecorder:
    """
    Usage recorder persisted through the storage adapter.

    Recording never fails the operation it observes: a storage error
    while saving a session is logged and the session is dropped.
    """

    def __init__(
        self,
        storage: StorageBackend,
        max_sessions: int | None = None,
        max_age_days: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._storage = storage
        self._max_sessions = max_sessions if max_sessions is not None else settings.session_max_count
        self._max_age_ms = (
            max_age_days if max_age_days is not None else settings.session_max_age_days
        ) * _DAY_MS
        self._enabled = settings.session_history_enabled if enabled is None else enabled
        self._sessions: List[ApiSession] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def load(self) -> int:
        """
        Read persisted sessions and the enabled flag, then prune.

        Returns:
            Number of sessions kept.
        """
        async with self._lock:
            records = await self._storage.load(NS_SESSIONS)
            self._sessions = sorted(
                (ApiSession(**r) for r in records),
                key=lambda s: s.start_time,
                reverse=True,
            )
            self._enabled = bool(
                await self._storage.load_setting(SESSIONS_ENABLED_SETTING_KEY, self._enabled)
            )
            self._loaded = True
            await self._prune()
        logger.info("Session recorder loaded — %d session(s).", len(self._sessions))
        return len(self._sessions)

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def _prune(self) -> None:
        cutoff = now_ms() - self._max_age_ms
        keep = [s for s in self._sessions if s.start_time >= cutoff][: self._max_sessions]
        kept_ids = {s.id for s in keep}
        dropped = [s for s in self._sessions if s.id not in kept_ids]
        self._sessions = keep
        for session in dropped:
            await self._storage.delete(NS_SESSIONS, session.id)
        if dropped:
            logger.info("Pruned %d API session(s).", len(dropped))

    # ── Recording ──────────────────────────────────────────────────────────────

    def start_session(
        self,
        kind: str,
        model: str,
        provider: str,
        conversation_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Optional[SessionHandle]:
        """Open a session; None when recording is disabled."""
        if not self._enabled:
            return None
        session = ApiSession(
            kind=kind,
            model=model,
            provider=provider,
            conversation_id=conversation_id,
            options=dict(options or {}),
        )
        logger.debug("API session %s started (%s, %s).", session.id, kind, model)
        return SessionHandle(session)

    def record_request(self, handle: Optional[SessionHandle], **details: Any) -> None:
        if handle is None:
            return
        handle.session.events.append(SessionEvent(type="request", **details))
        handle.session.request_count += 1

    def record_response(
        self,
        handle: Optional[SessionHandle],
        token_count: Optional[int] = None,
        content: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Record a response; the token count is estimated from ``content`` when absent."""
        if handle is None:
            return
        tokens = token_count if token_count is not None else estimate_tokens(content or "")
        handle.session.events.append(
            SessionEvent(
                type="response",
                token_count=tokens,
                content_length=len(content or ""),
                **details,
            )
        )
        handle.session.token_count += tokens

    def record_error(
        self,
        handle: Optional[SessionHandle],
        error: BaseException | str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        if handle is None:
            return
        handle.session.events.append(
            SessionEvent(
                type="error",
                message=str(error),
                error_kind=getattr(error, "kind", type(error).__name__),
                context=dict(context or {}),
            )
        )

    async def end_session(
        self, handle: Optional[SessionHandle], status: Optional[str] = None
    ) -> Optional[ApiSession]:
        """
        Close and persist a session.

        Args:
            handle : The handle from start_session (None is a no-op).
            status : "completed" or "failed"; inferred from the recorded
                     events when omitted.
        """
        if handle is None:
            return None
        session = handle.session
        session.end_time = now_ms()
        session.duration_ms = session.end_time - session.start_time
        session.status = status or ("failed" if session.error_count else "completed")
        session.updated_at = session.end_time

        await self._ensure_loaded()
        async with self._lock:
            try:
                await self._storage.save(NS_SESSIONS, session.model_dump())
                self._sessions.insert(0, session)
                await self._prune()
            except StorageError as exc:
                logger.warning("Could not persist API session %s: %s", session.id, exc)

        logger.debug(
            "API session %s ended — %s, %d ms, %d request(s).",
            session.id,
            session.status,
            session.duration_ms,
            session.request_count,
        )
        return session

    # ── Queries ────────────────────────────────────────────────────────────────

    async def get_sessions(self, **filters: Any) -> List[ApiSession]:
        """
        Sessions newest first, filtered by equality on conversation_id,
        model, provider, kind or status, and by ``start_date`` / ``end_date``
        bounds on start_time (epoch ms).
        """
        await self._ensure_loaded()
        start_date = filters.pop("start_date", None)
        end_date = filters.pop("end_date", None)

        sessions = []
        for session in self._sessions:
            if any(getattr(session, key, None) != value for key, value in filters.items() if value is not None):
                continue
            if start_date is not None and session.start_time < start_date:
                continue
            if end_date is not None and session.start_time > end_date:
                continue
            sessions.append(session)
        return sessions

    async def get_statistics(self) -> Dict[str, Any]:
        """Totals plus per-provider, per-model and per-day (UTC) breakdowns."""
        await self._ensure_loaded()

        def bucket() -> Dict[str, Any]:
            return {"count": 0, "requests": 0, "tokens": 0, "errors": 0}

        by_provider: Dict[str, Dict[str, Any]] = {}
        by_model: Dict[str, Dict[str, Any]] = {}
        by_date: Dict[str, Dict[str, Any]] = {}
        total_requests = total_tokens = total_duration = total_errors = 0

        for session in self._sessions:
            errors = session.error_count
            day = datetime.fromtimestamp(session.start_time / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
            for groups, key in ((by_provider, session.provider), (by_model, session.model), (by_date, day)):
                entry = groups.setdefault(key, bucket())
                entry["count"] += 1
                entry["requests"] += session.request_count
                entry["tokens"] += session.token_count
                entry["errors"] += errors
            total_requests += session.request_count
            total_tokens += session.token_count
            total_duration += session.duration_ms
            total_errors += errors

        for groups in (by_provider, by_model, by_date):
            for entry in groups.values():
                entry["error_rate"] = round(entry["errors"] / max(entry["requests"], 1), 4)

        count = len(self._sessions)
        return {
            "total_sessions": count,
            "total_requests": total_requests,
            "total_tokens": total_tokens,
            "total_duration_ms": total_duration,
            "average_duration_ms": round(total_duration / count) if count else 0,
            "average_tokens_per_session": round(total_tokens / count) if count else 0,
            "error_count": total_errors,
            "error_rate": round(total_errors / max(total_requests, 1), 4),
            "by_provider": by_provider,
            "by_model": by_model,
            "by_date": by_date,
        }

    # ── Management ─────────────────────────────────────────────────────────────

    async def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        await self._storage.save_setting(SESSIONS_ENABLED_SETTING_KEY, enabled)
        logger.info("API session history %s.", "enabled" if enabled else "disabled")

    async def clear(self) -> None:
        async with self._lock:
            self._sessions = []
            await self._storage.clear(NS_SESSIONS)
        logger.info("API session history cleared.")
