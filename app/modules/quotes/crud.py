"""
Record Store respaldado por PostgreSQL (SQLAlchemy async)

Cada operación abre su propia sesión y transacción. La conversión bloquea la
fila de la cotización (SELECT ... FOR UPDATE) y, si la cotización ya está
enlazada a una factura viva, devuelve esa factura en lugar de crear otra: dos
sesiones que convierten la misma cotización a la vez obtienen una sola factura.
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.modules.invoices.models import Invoice
from app.modules.invoices.schemas import InvoiceOut
from app.modules.invoices.service import build_invoice_from_quote, generate_invoice_number
from app.modules.quotes.models import Quote
from app.modules.quotes.schemas import QuoteCreate, QuoteOut
from app.modules.quotes.store import DuplicateRecordError, RecordNotFoundError, RecordStore, StoreSnapshot

logger = logging.getLogger(__name__)


def _as_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class SqlAlchemyRecordStore(RecordStore):
    """Record Store de una empresa sobre las tablas quotes / invoices"""

    def __init__(
        self,
        tenant_id: UUID,
        session_factory: async_sessionmaker = None,
        invoice_prefix: Optional[str] = None
    ):
        super().__init__(tenant_id)
        if session_factory is None:
            from app.database.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self.invoice_prefix = invoice_prefix or settings.INVOICE_NUMBER_PREFIX

    # ===== LECTURA =====

    async def get_snapshot(self) -> StoreSnapshot:
        async with self._session_factory() as session:
            quotes = (await session.execute(
                select(Quote)
                .where(Quote.tenant_id == self.tenant_id)
                .order_by(Quote.date.desc(), Quote.number.desc())
            )).scalars().all()
            invoices = (await session.execute(
                select(Invoice)
                .where(Invoice.tenant_id == self.tenant_id)
                .order_by(Invoice.number.desc())
            )).scalars().all()

            return StoreSnapshot(
                quotes=tuple(QuoteOut.model_validate(q) for q in quotes),
                invoices=tuple(InvoiceOut.model_validate(i) for i in invoices)
            )

    async def get_quote(self, quote_id: UUID) -> Optional[QuoteOut]:
        async with self._session_factory() as session:
            quote = await self._find_quote(session, quote_id)
            return QuoteOut.model_validate(quote) if quote else None

    async def get_invoice(self, invoice_id: Any) -> Optional[InvoiceOut]:
        async with self._session_factory() as session:
            invoice = await self._find_invoice(session, invoice_id)
            return InvoiceOut.model_validate(invoice) if invoice else None

    async def _find_quote(self, session: AsyncSession, quote_id: UUID, for_update: bool = False) -> Optional[Quote]:
        quote_uuid = _as_uuid(quote_id)
        if quote_uuid is None:
            return None
        query = select(Quote).where(Quote.id == quote_uuid, Quote.tenant_id == self.tenant_id)
        if for_update:
            query = query.with_for_update()
        return (await session.execute(query)).scalar_one_or_none()

    async def _find_invoice(self, session: AsyncSession, invoice_id: Any) -> Optional[Invoice]:
        invoice_uuid = _as_uuid(invoice_id)
        if invoice_uuid is None:
            return None
        return (await session.execute(
            select(Invoice).where(Invoice.id == invoice_uuid, Invoice.tenant_id == self.tenant_id)
        )).scalar_one_or_none()

    # ===== ESCRITURA =====

    async def _create_quote(self, data: QuoteCreate) -> QuoteOut:
        totals = data.totals()
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    quote = Quote(
                        tenant_id=self.tenant_id,
                        number=data.number,
                        client_name=data.client_name,
                        date=data.date,
                        valid_until=data.valid_until,
                        status=data.status,
                        converted=False,
                        invoice_id="",
                        items=[item.model_dump(mode="json") for item in data.items],
                        subtotal=totals.subtotal,
                        taxes_total=totals.taxes_total,
                        total_amount=totals.total_amount,
                        notes=data.notes
                    )
                    session.add(quote)
                    await session.flush()
                    await session.refresh(quote)
                    return QuoteOut.model_validate(quote)
            except IntegrityError as e:
                raise DuplicateRecordError(f"Ya existe una cotización con número {data.number}") from e

    async def _update_quote(self, quote_id: UUID, fields: Dict[str, Any]) -> QuoteOut:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    quote = await self._find_quote(session, quote_id, for_update=True)
                    if not quote:
                        raise RecordNotFoundError(f"Cotización {quote_id} no encontrada")
                    for key, value in fields.items():
                        setattr(quote, key, value)
                    await session.flush()
                    await session.refresh(quote)
                    return QuoteOut.model_validate(quote)
            except SQLAlchemyError as e:
                logger.error(f"Error actualizando cotización {quote_id}: {e}")
                raise

    async def _delete_quote(self, quote_id: UUID) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                quote = await self._find_quote(session, quote_id, for_update=True)
                if not quote:
                    raise RecordNotFoundError(f"Cotización {quote_id} no encontrada")
                await session.delete(quote)

    async def _convert_quote_to_invoice(self, quote_id: UUID) -> InvoiceOut:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    quote = await self._find_quote(session, quote_id, for_update=True)
                    if not quote:
                        raise RecordNotFoundError(f"Cotización {quote_id} no encontrada")

                    if quote.invoice_id:
                        existing = await self._find_invoice(session, quote.invoice_id)
                        if existing:
                            logger.info(f"Cotización {quote.number} ya enlazada a la factura {existing.number}")
                            return InvoiceOut.model_validate(existing)

                    number = await generate_invoice_number(session, self.tenant_id, self.invoice_prefix)
                    invoice = build_invoice_from_quote(quote, number)
                    session.add(invoice)
                    await session.flush()
                    await session.refresh(invoice)
                    logger.info(f"Factura {invoice.number} creada desde cotización {quote.number}")
                    return InvoiceOut.model_validate(invoice)
            except SQLAlchemyError as e:
                logger.error(f"Error convirtiendo cotización {quote_id} a factura: {e}")
                raise

    async def _delete_invoice(self, invoice_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                invoice = await self._find_invoice(session, invoice_id)
                if not invoice:
                    raise RecordNotFoundError(f"Factura {invoice_id} no encontrada")
                await session.delete(invoice)
