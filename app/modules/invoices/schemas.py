from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime
from enum import Enum

from app.modules.quotes.schemas import QuoteLineItem


class InvoiceStatus(str, Enum):
    DRAFT = "draft"      # Borrador, recién creada desde una cotización
    OPEN = "open"        # Abierta, pendiente de pago
    PAID = "paid"        # Pagada completamente
    VOID = "void"        # Anulada


class InvoiceOut(BaseModel):
    id: UUID
    tenant_id: UUID
    number: str
    status: InvoiceStatus
    client_name: str
    issue_date: date
    due_date: Optional[date] = None
    items: List[QuoteLineItem] = Field(default_factory=list)
    notes: Optional[str] = None
    currency: str = "MAD"
    subtotal: Decimal = Decimal("0")
    taxes_total: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        frozen = True


class InvoiceList(BaseModel):
    invoices: List[InvoiceOut]
    total: int
    limit: int
    offset: int


class InvoiceDeleteOut(BaseModel):
    """Resultado del borrado: cotizaciones que volvieron a ser convertibles"""
    deleted: bool
    invoice_id: UUID
    reconciled_quote_ids: List[UUID] = Field(default_factory=list)
