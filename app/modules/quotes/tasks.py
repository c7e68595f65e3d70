"""
Background tasks for the quotes module
"""
from typing import List, Optional
from uuid import UUID
import asyncio
import logging

from sqlalchemy import distinct, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import NullPool

from app.core.celery import celery_app
from app.core.config import settings
from app.modules.quotes.crud import SqlAlchemyRecordStore
from app.modules.quotes.models import Quote
from app.modules.quotes.reconciliation import reconcile_store

logger = logging.getLogger(__name__)


async def reconcile_tenants(session_factory: async_sessionmaker, tenant_ids: Optional[List[UUID]] = None) -> dict:
    """Run one reconciliation pass per tenant and report reconciled quote ids"""
    if tenant_ids is None:
        async with session_factory() as session:
            tenant_ids = (await session.execute(
                select(distinct(Quote.tenant_id)).where(Quote.invoice_id != "")
            )).scalars().all()

    report = {}
    for tenant_id in tenant_ids:
        store = SqlAlchemyRecordStore(tenant_id, session_factory=session_factory)
        reconciled = await reconcile_store(store)
        if reconciled:
            logger.info(f"Tenant {tenant_id}: {len(reconciled)} quotes reconciled")
        report[str(tenant_id)] = [str(quote_id) for quote_id in reconciled]
    return report


async def _run_reconciliation(tenant_id: Optional[str]) -> dict:
    # Own engine per run: the task runs in a fresh event loop
    engine = create_async_engine(settings.async_database_url, poolclass=NullPool)
    try:
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        tenant_ids = [UUID(tenant_id)] if tenant_id else None
        return await reconcile_tenants(session_factory, tenant_ids)
    finally:
        await engine.dispose()


@celery_app.task(bind=True)
def reconcile_orphaned_quotes(self, tenant_id: Optional[str] = None):
    """
    Periodic task: revert quotes whose linked invoice no longer exists
    """
    try:
        logger.info(f"Starting quote reconciliation (tenant: {tenant_id or 'all'})")
        report = asyncio.run(_run_reconciliation(tenant_id))
        total = sum(len(ids) for ids in report.values())
        logger.info(f"Quote reconciliation completed: {total} quotes reconciled")
        return {"status": "completed", "reconciled": report}

    except Exception as e:
        logger.error(f"Quote reconciliation failed: {str(e)}")
        raise self.retry(exc=e, countdown=60, max_retries=3)
