"""Diagnostic recording for PKCE flows.

The recorder is attached to the orchestrator as a :class:`FlowObserver`.
It only receives events; the orchestrator never reads from it, so removing
it leaves protocol behaviour unchanged.

Secret material (verifiers, challenges, state, codes, tokens) is reduced to
presence flags and lengths unless the recorder runs with ``debug=True``.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from pkceflow.config import Settings
from pkceflow.models.diagnostics import FinalState, OAuthSession, Phase, PhaseEvent
from pkceflow.primitives.storage import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "pkceflow:diagnostics:"
DEFAULT_MAX_SESSIONS = 100

SECRET_KEYS = frozenset(
    {
        "code",
        "code_verifier",
        "verifier",
        "code_challenge",
        "challenge",
        "state",
        "access_token",
        "refresh_token",
        "id_token",
        "api_key",
        "apikey",
    }
)


class FlowObserver(Protocol):
    """Receives orchestrator phase transitions."""

    async def flow_started(self, provider: str) -> None: ...

    async def phase_event(
        self,
        provider: str,
        name: str,
        phase: Phase,
        success: bool,
        metadata: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> None: ...

    async def flow_finished(self, provider: str, success: bool) -> None: ...


class NullObserver:
    async def flow_started(self, provider: str) -> None:
        pass

    async def phase_event(
        self,
        provider: str,
        name: str,
        phase: Phase,
        success: bool,
        metadata: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        pass

    async def flow_finished(self, provider: str, success: bool) -> None:
        pass


def redact(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Replace secret values with ``has_<key>`` and ``<key>_length`` entries."""
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in SECRET_KEYS:
            redacted[f"has_{key}"] = bool(value)
            redacted[f"{key}_length"] = len(value) if isinstance(value, str) else 0
        elif isinstance(value, Mapping):
            redacted[key] = redact(value)
        else:
            redacted[key] = value
    return redacted


class DiagnosticRecorder:
    """Append-only per-session event log with exportable timelines.

    With a ``store``, the header of each open session (id, provider, start
    time) is persisted on ``flow_started`` so a callback leg running in
    another process continues the same session. Storage failures are
    logged and never reach the flow.
    """

    def __init__(
        self,
        debug: bool = False,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        store: KeyValueStore | None = None,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        self.debug = debug
        self.enabled = enabled
        self.max_sessions = max_sessions
        self._clock = clock
        self._store = store
        self._sessions: dict[str, OAuthSession] = {}
        self._current_session_id: str | None = None
        self._provider_sessions: dict[str, str] = {}

    @classmethod
    def from_settings(
        cls, settings: Settings, store: KeyValueStore | None = None
    ) -> DiagnosticRecorder:
        """Recorder configured from settings; ``debug`` disables redaction."""
        return cls(debug=settings.debug, store=store)

    @property
    def current_session_id(self) -> str | None:
        return self._current_session_id

    def start_session(
        self,
        provider: str | None = None,
        session_id: str | None = None,
        start_time: float | None = None,
    ) -> str:
        """Open a new session and make it current.

        Nothing is recorded while the recorder is disabled. The oldest
        sessions are dropped once ``max_sessions`` is exceeded.
        """
        session_id = session_id or f"oauth-debug-{uuid.uuid4().hex}"
        if not self.enabled:
            return session_id

        resumed = start_time is not None
        self._sessions[session_id] = OAuthSession(
            session_id=session_id,
            provider=provider,
            start_time=start_time if resumed else self._clock(),
        )
        self._current_session_id = session_id
        if provider is not None:
            self._provider_sessions[provider] = session_id
        self._prune()

        if resumed:
            self.log_event("session_resumed", "callback", True, {"provider": provider})
        else:
            self.log_event(
                "session_started", "initiation", True, {"provider": provider}
            )
        action = "resumed" if resumed else "started"
        logger.debug(f"Diagnostic session {action}: {session_id}")
        return session_id

    def log_event(
        self,
        name: str,
        phase: Phase,
        success: bool,
        metadata: Mapping[str, Any] | None = None,
        error: str | None = None,
        session_id: str | None = None,
    ) -> None:
        """Append an event to a session (the current one by default)."""
        if not self.enabled:
            return

        session = self._sessions.get(session_id or self._current_session_id or "")
        if session is None:
            return

        metadata = dict(metadata or {})
        if not self.debug:
            metadata = redact(metadata)

        now = self._clock()
        session.events.append(
            PhaseEvent(
                timestamp=now,
                name=name,
                phase=phase,
                success=success,
                metadata=metadata,
                error=error,
                elapsed_ms=(now - session.start_time) * 1000,
            )
        )
        if not success:
            session.error_count += 1

    def finalize(self, final_state: FinalState, session_id: str | None = None) -> None:
        """Close a session and compute its metrics."""
        session = self._sessions.get(session_id or self._current_session_id or "")
        if session is None:
            return

        session.final_state = final_state
        session.end_time = self._clock()
        session.metrics.total_duration = (session.end_time - session.start_time) * 1000

        callback = session.first_event("callback")
        if callback is not None:
            session.metrics.callback_time = callback.elapsed_ms

        exchange_start = session.first_event("exchange")
        exchange_end = session.last_event("exchange")
        if exchange_start is not None and exchange_end is not None:
            session.metrics.exchange_time = (
                exchange_end.timestamp - exchange_start.timestamp
            ) * 1000

        logger.debug(
            f"Diagnostic session {session.session_id} finalized: {final_state}, "
            f"{len(session.events)} events, {session.error_count} errors"
        )

    def get_session(self, session_id: str | None = None) -> OAuthSession | None:
        return self._sessions.get(session_id or self._current_session_id or "")

    def export_session(self, session_id: str) -> dict[str, Any] | None:
        """JSON-serialisable timeline for one session."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return session.model_dump(mode="json")

    def export_all(self) -> str:
        data = {
            "sessions": [s.model_dump(mode="json") for s in self._sessions.values()],
            "export_time": self._clock(),
        }
        return json.dumps(data, indent=2)

    def clear(self) -> None:
        self._sessions.clear()
        self._provider_sessions.clear()
        self._current_session_id = None
        logger.debug("Diagnostic data cleared")

    def detect_issues(self, session_id: str | None = None) -> list[tuple[str, str]]:
        """Known failure signatures as ``(issue, recommendation)`` pairs."""
        session = self.get_session(session_id)
        if session is None:
            return []

        issues: list[tuple[str, str]] = []
        names = {event.name for event in session.events}

        if "provider_denied" in names:
            issues.append(
                (
                    "OAuth provider returned an error",
                    "Check OAuth provider configuration and credentials",
                )
            )
        if "pkce_state_not_found" in names:
            issues.append(
                (
                    "Authorization code present but no PKCE verifier found in storage",
                    "The flow was interrupted, expired or storage was cleared; "
                    "restart authentication",
                )
            )
        if "state_mismatch" in names:
            issues.append(
                (
                    "Returned state did not match the stored state",
                    "Possible CSRF or a stale tab; restart authentication",
                )
            )
        failed_strategies = [e for e in session.events if e.name == "strategy_failed"]
        if failed_strategies and "exchange_failed" in names:
            issues.append(
                (
                    f"All {len(failed_strategies)} token exchange strategies failed",
                    "Check token endpoint configuration and API key",
                )
            )
        return issues

    def generate_report(self, session_id: str | None = None) -> str:
        """Human-readable timeline for troubleshooting."""
        session = self.get_session(session_id)
        if session is None:
            return "No diagnostic session recorded."

        lines = [
            "PKCE FLOW DIAGNOSTIC REPORT",
            f"Session: {session.session_id}",
            f"Provider: {session.provider or 'unknown'}",
            f"Final state: {session.final_state}",
            f"Errors: {session.error_count}",
            "",
            "TIMELINE:",
        ]
        for event in session.events:
            marker = "ok" if event.success else "FAIL"
            line = f"  +{event.elapsed_ms:8.1f}ms [{event.phase}] {event.name} {marker}"
            if event.error:
                line += f" - {event.error}"
            lines.append(line)

        metrics = session.metrics
        lines += [
            "",
            "METRICS:",
            f"  Initiation to callback: {_format_ms(metrics.callback_time)}",
            f"  Code exchange: {_format_ms(metrics.exchange_time)}",
            f"  Total duration: {_format_ms(metrics.total_duration)}",
        ]

        issues = self.detect_issues(session.session_id)
        if issues:
            lines += ["", "ISSUES:"]
            lines += [f"  - {issue} ({fix})" for issue, fix in issues]

        return "\n".join(lines)

    # FlowObserver

    async def flow_started(self, provider: str) -> None:
        session_id = self.start_session(provider)
        session = self._sessions.get(session_id)
        if session is None or self._store is None:
            return

        header = {
            "session_id": session.session_id,
            "provider": provider,
            "start_time": session.start_time,
        }
        try:
            await self._store.set(self.storage_key(provider), json.dumps(header))
        except OSError as e:
            logger.warning(f"Could not persist diagnostic session for {provider}: {e}")

    async def phase_event(
        self,
        provider: str,
        name: str,
        phase: Phase,
        success: bool,
        metadata: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        if not self.enabled:
            return

        session_id = self._provider_sessions.get(provider)
        if session_id is None or self._sessions[session_id].end_time is not None:
            session_id = await self._resume_session(provider)
        self.log_event(name, phase, success, metadata, error, session_id=session_id)

    async def flow_finished(self, provider: str, success: bool) -> None:
        session_id = self._provider_sessions.get(provider)
        if session_id is not None:
            self.finalize("success" if success else "failure", session_id=session_id)

        if self._store is not None:
            try:
                await self._store.delete(self.storage_key(provider))
            except OSError as e:
                logger.warning(
                    f"Could not remove diagnostic session for {provider}: {e}"
                )

    @staticmethod
    def storage_key(provider: str) -> str:
        return f"{STORAGE_PREFIX}{provider}"

    async def _resume_session(self, provider: str) -> str:
        """Continue the session persisted by the initiating leg, if any."""
        header = await self._load_header(provider)
        if header is None:
            # Callback leg with no record of the initiation
            return self.start_session(provider)
        return self.start_session(
            provider, session_id=header["session_id"], start_time=header["start_time"]
        )

    async def _load_header(self, provider: str) -> dict[str, Any] | None:
        if self._store is None:
            return None
        try:
            raw = await self._store.get(self.storage_key(provider))
        except OSError as e:
            logger.warning(f"Could not load diagnostic session for {provider}: {e}")
            return None
        if raw is None:
            return None

        try:
            header = json.loads(raw)
            return {
                "session_id": str(header["session_id"]),
                "start_time": float(header["start_time"]),
            }
        except (ValueError, TypeError, KeyError):
            logger.warning(f"Ignoring unreadable diagnostic session for {provider}")
            return None

    def _prune(self) -> None:
        while len(self._sessions) > self.max_sessions:
            oldest = next(iter(self._sessions))
            del self._sessions[oldest]
            self._provider_sessions = {
                p: sid for p, sid in self._provider_sessions.items() if sid != oldest
            }


def _format_ms(value: float | None) -> str:
    return "n/a" if value is None else f"{value:.1f}ms"
