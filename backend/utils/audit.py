"""Billing audit trail.

Every subscription transition, user cancel / reactivate, forced renewal and
failed webhook leaves one document in audit_logs. Writes are best effort:
the billing state change has already happened when the entry is written.
"""
from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


def changed_fields(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """{field: {"from": old, "to": new}} for every field whose value differs."""
    before = before or {}
    after = after or {}
    return {
        key: {"from": before.get(key), "to": after.get(key)}
        for key in sorted(set(before) | set(after))
        if before.get(key) != after.get(key)
    }


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    user_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
    db=None,
) -> str:
    """Write one audit entry and return its audit_id ("" if the write failed).

    actor_role is "SYSTEM" for webhook-driven changes and "USER" for
    self-service actions; reason_code carries the Stripe event id when the
    change came from a webhook.
    """
    db = db if db is not None else database.get_db()
    entry_metadata = dict(metadata or {})
    changes = changed_fields(before_state, after_state) if before_state and after_state else {}
    if changes:
        entry_metadata["changes"] = changes

    audit_log = AuditLog(
        action=action,
        actor_role=actor_role,
        actor_id=actor_id,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        before_state=before_state,
        after_state=after_state,
        metadata=entry_metadata or None,
        reason_code=reason_code,
    )
    try:
        await db.audit_logs.insert_one(audit_log.model_dump())
    except Exception as e:
        # Never fail the billing operation due to audit log failure
        logger.error(f"AUDIT_WRITE_FAILED action={audit_log.action} user_id={user_id} error={e}")
        return ""
    logger.info(f"AUDIT action={audit_log.action} user_id={user_id} resource={resource_type}:{resource_id}")
    return audit_log.audit_id


async def get_audit_logs_for_user(
    user_id: str,
    limit: int = 50,
    db=None,
) -> List[Dict[str, Any]]:
    """Most recent billing audit entries for a user."""
    db = db if db is not None else database.get_db()
    cursor = db.audit_logs.find(
        {"user_id": user_id},
        {"_id": 0}
    ).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)
