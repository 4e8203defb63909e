from __future__ import annotations

from dataclasses import dataclass
from typing import Any
import logging

from starlette.requests import Request

from tenantguard.core.errors import TenantGuardError
from tenantguard.domain.entities import AuditEvent
from tenantguard.persistence.versioned import VersionedStore


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "key_hash"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Substring match, case-insensitive.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Walk dicts and lists, replacing values under sensitive keys.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


@dataclass(frozen=True)
class RequestContext:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def get_request_context(request: Request | None) -> RequestContext:
    # Headers carrying credentials are never read here.
    if request is None:
        return RequestContext()
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return RequestContext(
        request_id=getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )


class AuditLogger:
    """Fire-and-forget audit trail; a failed write never undoes the audited change."""

    def __init__(self, store: VersionedStore) -> None:
        self._store = store

    async def log(
        self,
        *,
        actor_id: str | None,
        action: str,
        workspace_id: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> AuditEvent | None:
        context = context or RequestContext()
        event = AuditEvent(
            actor_id=actor_id,
            action=action,
            workspace_id=workspace_id,
            target_type=target_type,
            target_id=target_id,
            metadata=sanitize_metadata(metadata or {}),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        try:
            await self._store.put_version(event)
        except TenantGuardError as exc:
            logger.warning(
                "audit_event_write_failed action=%s request_id=%s",
                action,
                context.request_id,
                exc_info=exc,
            )
            return None
        return event

    async def list_events(
        self,
        *,
        workspace_id: str | None = None,
        action: str | None = None,
        limit: int = 50,
    ) -> list[AuditEvent]:
        filters: dict[str, Any] = {}
        if workspace_id is not None:
            filters["workspace_id"] = workspace_id
        if action is not None:
            filters["action"] = action
        events = await self._store.resolve_latest_many(AuditEvent, **filters)
        events.sort(key=lambda event: event.updated_at, reverse=True)
        return events[:limit]
