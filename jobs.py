"""
jobs.py: batch work that runs outside the request path.

    python jobs.py

Expired vouchers are not deleted or deactivated; the job only records an EXPIRED
audit event for each one, once.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from audit import VoucherAudit
from config import get_settings
from database import MongoStore
from logging_config import get_logger, setup_logging
from quotes import utc_now
from schemas import ActorType, AuditAction

log = get_logger(__name__)


async def process_expired_vouchers(store, audit: Optional[VoucherAudit] = None, now: Optional[datetime] = None) -> int:
    """Writes an EXPIRED audit event for every expired voucher that lacks one. Returns how many were written."""
    audit = audit or VoucherAudit(store)
    now = now or utc_now()
    processed = 0
    for voucher in await store.list_expired_vouchers(now):
        if await store.has_audit_event(voucher.id, AuditAction.EXPIRED.value):
            continue
        await audit.publish(
            AuditAction.EXPIRED, ActorType.SYSTEM,
            voucher_id=voucher.id, code=voucher.code,
            metadata={"expiryDate": voucher.expiry_date.isoformat(), "usedCount": voucher.used_count},
        )
        processed += 1
    if processed:
        log.info(f"Processed {processed} expired voucher(s)")
    return processed


async def main():
    store = MongoStore()
    await store.ensure_indexes()
    await process_expired_vouchers(store)


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    asyncio.run(main())
