from fastapi import APIRouter, Depends, Query
from typing import Optional
from uuid import UUID

from app.core.config import settings
from app.modules.invoices.service import InvoiceService
from app.modules.invoices.schemas import InvoiceOut, InvoiceList, InvoiceDeleteOut, InvoiceStatus
from app.modules.quotes.router import get_billing_context
from app.modules.quotes.service import BillingContext

# Router principal del módulo de facturas
router = APIRouter(prefix="/invoices", tags=["Invoices"])


async def get_invoice_service(context: BillingContext = Depends(get_billing_context)) -> InvoiceService:
    return InvoiceService(context.store)


@router.get("/", response_model=InvoiceList)
async def list_invoices(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    status: Optional[InvoiceStatus] = Query(None, description="Estado de la factura"),
    search: Optional[str] = Query(None, description="Buscar por número o cliente"),
    service: InvoiceService = Depends(get_invoice_service)
):
    """
    Listar facturas con filtros

    Las facturas se crean únicamente convirtiendo cotizaciones.
    """
    return await service.get_invoices(limit=limit, offset=offset, status=status, search=search)


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice(
    invoice_id: UUID,
    service: InvoiceService = Depends(get_invoice_service)
):
    """Obtener una factura"""
    return await service.get_invoice_by_id(invoice_id)


@router.delete("/{invoice_id}", response_model=InvoiceDeleteOut)
async def delete_invoice(
    invoice_id: UUID,
    service: InvoiceService = Depends(get_invoice_service)
):
    """
    Eliminar una factura

    Las cotizaciones que la referenciaban vuelven a ser convertibles
    automáticamente (reconciliación).
    """
    return await service.delete_invoice(invoice_id)
