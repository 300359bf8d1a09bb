import uuid
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog
from app.models.enums import AuditEvent

logger = structlog.get_logger()


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


async def log_audit_event(
    db: AsyncSession,
    event: AuditEvent,
    *,
    referral_id: uuid.UUID | None = None,
    user_id: uuid.UUID | None = None,
    **payload: Any,
) -> None:
    """Append an audit record inside a savepoint and commit it.

    Best-effort: callers commit their state transition first. A failed write
    only rolls back its own savepoint, so instances the caller already holds
    stay loaded and the transition is untouched.
    """
    logger.info(
        "referral_audit",
        audit_event=event.value,
        referral_id=str(referral_id) if referral_id else None,
        user_id=str(user_id) if user_id else None,
    )
    try:
        async with db.begin_nested():
            db.add(AuditLog(
                event_type=event.value,
                referral_id=referral_id,
                user_id=user_id,
                payload=_jsonable(payload),
            ))
        await db.commit()
    except Exception as e:
        logger.warning(
            "audit_log_write_failed",
            audit_event=event.value,
            referral_id=str(referral_id) if referral_id else None,
            error_type=type(e).__name__,
        )
