"""
Routers FastAPI para el módulo de Cotizaciones (Quotes)

Endpoints:
- Cotizaciones: CRUD con búsqueda por cliente/número y filtro por estado
- Conversión: solicitud, aprobación, confirmación y cancelación del flujo
  cotización → factura de la sesión de UI (cabecera X-Session-ID)

Todos los endpoints respetan la arquitectura multi-tenant (X-Company-ID).
"""

from fastapi import APIRouter, Depends, status, Query, HTTPException
from typing import Optional
from uuid import UUID

from app.core.config import settings
from app.dependencies.companyDependencies import TenantId, SessionId
from app.modules.quotes.service import (
    BillingContext, BillingRegistry, BillingSession, QuoteService, get_billing_registry
)
from app.modules.quotes.schemas import (
    QuoteCreate, QuoteUpdate, QuoteDetail, QuoteList, QuoteStatus,
    ConversionApproval, ConversionActionOut, ConversionConfirmOut, ConversionStatusOut,
    ConversionSessionClosedOut
)
from app.modules.quotes.workflow import InvoiceCreationError

router = APIRouter(prefix="/quotes", tags=["Quotes"])


async def get_billing_context(
    tenant_id: TenantId,
    registry: BillingRegistry = Depends(get_billing_registry)
) -> BillingContext:
    return await registry.context_for(tenant_id)


async def get_billing_session(
    session_id: SessionId,
    context: BillingContext = Depends(get_billing_context)
) -> BillingSession:
    return context.session(session_id)


async def get_quote_service(
    context: BillingContext = Depends(get_billing_context),
    session: BillingSession = Depends(get_billing_session)
) -> QuoteService:
    return QuoteService(context.store, session)


# ===== CONVERSION ENDPOINTS =====

@router.get("/conversion", response_model=ConversionStatusOut)
async def get_conversion_status(session: BillingSession = Depends(get_billing_session)):
    """Estado actual del flujo de conversión de la sesión"""
    return session.workflow.status()


@router.post("/{quote_id}/conversion/request", response_model=ConversionActionOut)
async def request_conversion(
    quote_id: UUID,
    session: BillingSession = Depends(get_billing_session),
    service: QuoteService = Depends(get_quote_service)
):
    """
    Solicitar la conversión de una cotización en factura

    Si la cotización ya está convertida la solicitud se ignora (performed=false):
    una cotización se convierte como máximo una vez.
    """
    await service.get_quote_by_id(quote_id)
    performed = await session.workflow.request_convert(quote_id)
    return ConversionActionOut(performed=performed, status=session.workflow.status())


@router.post("/conversion/approve", response_model=ConversionActionOut)
async def approve_conversion(
    approval: ConversionApproval,
    session: BillingSession = Depends(get_billing_session)
):
    """
    Aprobar (o rechazar) la conversión pendiente

    Rechazar descarta la solicitud.
    """
    performed = session.workflow.approve(approval.approved)
    return ConversionActionOut(performed=performed, status=session.workflow.status())


@router.post("/conversion/confirm", response_model=ConversionConfirmOut)
async def confirm_conversion(session: BillingSession = Depends(get_billing_session)):
    """
    Crear la factura de la cotización aprobada

    No hace nada sin aprobación explícita o si ya hay una conversión en curso.
    Si la creación de la factura falla la solicitud sigue abierta y puede
    reintentarse.
    """
    try:
        result = await session.workflow.confirm_convert()
    except InvoiceCreationError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Error creando la factura"
        )
    return ConversionConfirmOut(
        performed=result is not None,
        result=result,
        status=session.workflow.status()
    )


@router.post("/conversion/cancel", response_model=ConversionActionOut)
async def cancel_conversion(session: BillingSession = Depends(get_billing_session)):
    """Cancelar la solicitud de conversión (no posible durante la conversión)"""
    performed = session.workflow.cancel()
    return ConversionActionOut(performed=performed, status=session.workflow.status())


@router.delete("/conversion/session", response_model=ConversionSessionClosedOut)
async def close_conversion_session(
    session_id: SessionId,
    context: BillingContext = Depends(get_billing_context)
):
    """
    Cerrar la sesión de UI (al cerrar la vista o la pestaña)

    Descarta su flujo de conversión y su overlay local.
    """
    closed = context.close_session(session_id)
    return ConversionSessionClosedOut(session_id=session_id, closed=closed)


# ===== QUOTES ENDPOINTS =====

@router.post("/", response_model=QuoteDetail, status_code=status.HTTP_201_CREATED)
async def create_quote(
    quote_data: QuoteCreate,
    service: QuoteService = Depends(get_quote_service)
):
    """
    Crear una nueva cotización

    Los totales se calculan a partir de los ítems y la tasa de impuesto.
    """
    return await service.create_quote(quote_data)


@router.get("/", response_model=QuoteList)
async def list_quotes(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    status: Optional[QuoteStatus] = Query(None, description="Filtrar por estado"),
    search: Optional[str] = Query(None, description="Buscar por cliente o número"),
    service: QuoteService = Depends(get_quote_service)
):
    """
    Listar cotizaciones con filtros

    Cada cotización incluye already_converted para decidir si mostrar la
    acción de convertir o la marca de facturada.
    """
    return await service.get_quotes(limit=limit, offset=offset, status=status, search=search)


@router.get("/{quote_id}", response_model=QuoteDetail)
async def get_quote(
    quote_id: UUID,
    service: QuoteService = Depends(get_quote_service)
):
    """Obtener una cotización"""
    return await service.get_quote_by_id(quote_id)


@router.patch("/{quote_id}", response_model=QuoteDetail)
async def update_quote(
    quote_id: UUID,
    quote_update: QuoteUpdate,
    service: QuoteService = Depends(get_quote_service)
):
    """
    Actualizar una cotización

    Los campos de conversión no se pueden modificar desde aquí.
    """
    return await service.update_quote(quote_id, quote_update)


@router.delete("/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_quote(
    quote_id: UUID,
    service: QuoteService = Depends(get_quote_service)
):
    """Eliminar una cotización"""
    await service.delete_quote(quote_id)
