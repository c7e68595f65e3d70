from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import date
from typing import Optional, List
from uuid import UUID
import logging

from app.modules.invoices.models import Invoice, InvoiceSequence
from app.modules.invoices.schemas import InvoiceOut, InvoiceList, InvoiceDeleteOut, InvoiceStatus

logger = logging.getLogger(__name__)


def format_invoice_number(prefix: Optional[str], number: int) -> str:
    """Número de factura con formato PREFIJO + 6 dígitos"""
    return f"{prefix or 'INV-'}{number:06d}"


async def generate_invoice_number(session: AsyncSession, tenant_id: UUID, prefix: str) -> str:
    """Generar número de factura secuencial por empresa (bloquea la secuencia)"""
    sequence = (await session.execute(
        select(InvoiceSequence)
        .where(InvoiceSequence.tenant_id == tenant_id)
        .with_for_update()
    )).scalar_one_or_none()

    if not sequence:
        sequence = InvoiceSequence(tenant_id=tenant_id, current_number=0, prefix=prefix)
        session.add(sequence)
        await session.flush()

    sequence.current_number += 1
    return format_invoice_number(sequence.prefix, sequence.current_number)


def build_invoice_from_quote(quote, number: str) -> Invoice:
    """Factura borrador con copia de cliente, ítems y totales de la cotización"""
    return Invoice(
        tenant_id=quote.tenant_id,
        number=number,
        status=InvoiceStatus.DRAFT,
        client_name=quote.client_name,
        issue_date=date.today(),
        items=list(quote.items or []),
        notes=f"Convertida desde cotización {quote.number}",
        subtotal=quote.subtotal,
        taxes_total=quote.taxes_total,
        total_amount=quote.total_amount
    )


class InvoiceService:
    """
    Gestión de facturas sobre el Record Store de la empresa.

    El borrado de una factura es el disparador de la reconciliación: el store
    publica el nuevo snapshot y las cotizaciones que la referenciaban vuelven
    a ser convertibles antes de que esta llamada retorne.
    """

    def __init__(self, store):
        self.store = store

    async def get_invoices(
        self,
        limit: int = 100,
        offset: int = 0,
        status: Optional[InvoiceStatus] = None,
        search: Optional[str] = None
    ) -> InvoiceList:
        snapshot = await self.store.get_snapshot()
        invoices: List[InvoiceOut] = list(snapshot.invoices)

        if status:
            invoices = [inv for inv in invoices if inv.status == status]
        if search:
            term = search.lower()
            invoices = [
                inv for inv in invoices
                if term in inv.number.lower() or term in inv.client_name.lower()
            ]

        invoices.sort(key=lambda inv: (inv.issue_date, inv.number), reverse=True)
        return InvoiceList(
            invoices=invoices[offset:offset + limit],
            total=len(invoices),
            limit=limit,
            offset=offset
        )

    async def get_invoice_by_id(self, invoice_id: UUID) -> InvoiceOut:
        invoice = await self.store.get_invoice(invoice_id)
        if not invoice:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Factura no encontrada"
            )
        return invoice

    async def delete_invoice(self, invoice_id: UUID) -> InvoiceDeleteOut:
        await self.get_invoice_by_id(invoice_id)

        before = await self.store.get_snapshot()
        linked = [q.id for q in before.quotes if q.invoice_id == str(invoice_id)]

        try:
            await self.store.delete_invoice(invoice_id)
        except LookupError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Factura no encontrada")
        except Exception as e:
            logger.error(f"Error eliminando factura {invoice_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error eliminando factura: {str(e)}"
            )

        after = await self.store.get_snapshot()
        reconciled = []
        for quote_id in linked:
            quote = after.find_quote(quote_id)
            if quote is not None and not quote.invoice_id:
                reconciled.append(quote_id)
        logger.info(f"Factura {invoice_id} eliminada; cotizaciones reconciliadas: {len(reconciled)}")

        return InvoiceDeleteOut(deleted=True, invoice_id=invoice_id, reconciled_quote_ids=reconciled)
