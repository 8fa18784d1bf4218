"""
Voucher audit trail: one document per voucher lifecycle event in `voucher_audit_logs`.
"""
from __future__ import annotations

from typing import Any, Optional

from pymongo.errors import PyMongoError

from logging_config import get_logger
from schemas import ActorType, AuditAction

log = get_logger(__name__)


class VoucherAudit:
    def __init__(self, store):
        self.store = store

    async def publish(
        self,
        action: AuditAction,
        actor_type: ActorType,
        *,
        voucher_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        order_id: Optional[str] = None,
        code: Optional[str] = None,
        result: Optional[str] = None,
        error_code: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        session=None,
    ):
        """
        Writes an audit event.

        Inside a checkout transaction (`session` given) a failed write propagates so the
        transaction rolls back. Standalone events (validation attempts, admin actions)
        are best effort: a storage failure is logged and the request carries on.
        """
        event = {
            "voucher_id": voucher_id,
            "action": AuditAction(action).value,
            "actor_type": ActorType(actor_type).value,
            "actor_id": actor_id,
            "order_id": order_id,
            "code": code,
            "result": result,
            "error_code": error_code,
            "metadata": metadata,
        }
        try:
            await self.store.insert_audit_event(event, session=session)
        except PyMongoError as e:
            if session is not None:
                raise
            log.warning(f"Voucher audit write failed (action={event['action']}, code={code}): {e}")
