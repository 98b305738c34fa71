from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bkeep_auth.logging import get_logger
from bkeep_auth.storage.models import AuditLog, new_id

logger = get_logger(__name__)


@dataclass
class RequestContext:
    """Client details captured at the HTTP edge and threaded into services."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    request_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_audit_context(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "userAgent": self.user_agent,
            "method": self.method,
            "endpoint": self.endpoint,
            "requestId": self.request_id,
        }


def actor_for(user: Any) -> Dict[str, Any]:
    """Audit actor for a ``User`` row or a decoded access-token payload."""
    if isinstance(user, dict):
        fields = user
    else:
        fields = {k: getattr(user, k, None) for k in ("id", "email", "name")}
    return {
        "type": "user",
        "id": fields.get("id"),
        "email": fields.get("email"),
        "name": fields.get("name"),
    }


class AuditTrail:
    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        action: str,
        actor: Dict[str, Any],
        targets: Optional[List[Dict[str, Any]]] = None,
        *,
        tenant_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(
            id=new_id(),
            action=action,
            actor=actor,
            targets=list(targets or []),
            tenant_id=tenant_id,
            context=context.as_audit_context() if context else {},
            metadata=dict(metadata or {}),
        )
        return self.store.record_audit(entry)

    def record_safely(self, action: str, actor: Dict[str, Any], *args, **kwargs) -> Optional[AuditLog]:
        """Record an audit entry; failures are logged and swallowed."""
        try:
            return self.record(action, actor, *args, **kwargs)
        except Exception as exc:
            logger.error(
                "audit_log_failed",
                action=action,
                actor_id=actor.get("id"),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
