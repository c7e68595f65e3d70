"""
Esquemas Pydantic para el módulo de Cotizaciones (Quotes)

Define la validación de entrada/salida de:
- Quotes: cotizaciones con ítems y totales
- Conversión: estado del flujo cotización → factura y notificaciones

Los campos de conversión (converted, invoice_id, status='converted') no se
pueden escribir desde la API: solo el flujo de conversión y la reconciliación
los modifican.
"""

from pydantic import BaseModel, Field, StrictBool, field_validator
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List
from uuid import UUID
from datetime import date as date_type, datetime
from enum import Enum


# ===== ENUMS =====

class QuoteStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CONVERTED = "converted"


class ConversionState(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    AWAITING_APPROVAL = "awaiting_approval"
    CONVERTING = "converting"
    DONE = "done"


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


# ===== LINE ITEMS =====

class QuoteLineItem(BaseModel):
    description: str = Field(..., min_length=1, max_length=300)
    quantity: Decimal = Field(..., gt=0, description="Cantidad debe ser mayor a 0")
    unit_price: Decimal = Field(..., ge=0, description="Precio unitario sin impuestos")

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price

    class Config:
        frozen = True


class QuoteTotals(BaseModel):
    subtotal: Decimal
    taxes_total: Decimal
    total_amount: Decimal


# ===== QUOTE SCHEMAS =====

def _reject_converted(v):
    if v == QuoteStatus.CONVERTED:
        raise ValueError("El estado 'converted' solo se asigna al convertir la cotización en factura")
    return v


class QuoteCreate(BaseModel):
    number: str = Field(..., min_length=1, max_length=50)
    client_name: str = Field(..., min_length=1, max_length=200)
    date: date_type = Field(default_factory=date_type.today)
    valid_until: Optional[date_type] = None
    status: QuoteStatus = QuoteStatus.DRAFT
    tax_rate: Decimal = Field(Decimal("0"), ge=0, le=100, description="Porcentaje de impuesto")
    notes: Optional[str] = None
    items: List[QuoteLineItem] = Field(..., min_length=1, description="Debe incluir al menos un item")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _reject_converted(v)

    def totals(self) -> QuoteTotals:
        subtotal = sum((item.line_total for item in self.items), Decimal("0"))
        taxes = (subtotal * self.tax_rate / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        subtotal = subtotal.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return QuoteTotals(subtotal=subtotal, taxes_total=taxes, total_amount=subtotal + taxes)


class QuoteUpdate(BaseModel):
    """Cambios permitidos sobre una cotización (nunca los campos de conversión)"""
    client_name: Optional[str] = Field(None, min_length=1, max_length=200)
    valid_until: Optional[date_type] = None
    status: Optional[QuoteStatus] = None
    notes: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _reject_converted(v)


class QuoteOut(BaseModel):
    id: UUID
    tenant_id: UUID
    number: str
    client_name: str
    date: date_type
    valid_until: Optional[date_type] = None
    status: QuoteStatus
    converted: bool = False
    invoice_id: str = ""
    items: List[QuoteLineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    taxes_total: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("invoice_id", mode="before")
    @classmethod
    def normalize_invoice_id(cls, v):
        return "" if v is None else str(v)

    class Config:
        from_attributes = True
        frozen = True


class QuoteDetail(QuoteOut):
    """Cotización con el estado de conversión visto por la sesión actual"""
    already_converted: bool


class QuoteList(BaseModel):
    items: List[QuoteDetail]
    total: int
    limit: int
    offset: int


# ===== CONVERSION SCHEMAS =====

class ConversionNotification(BaseModel):
    """Evento para la UI: éxito (se cierra solo a los 5 s) o error visible"""
    kind: NotificationKind
    message: str
    duration_ms: Optional[int] = None
    quote_id: Optional[UUID] = None
    invoice_id: Optional[str] = None


class ConversionApproval(BaseModel):
    approved: StrictBool = Field(..., description="Aprobación explícita del usuario antes de crear la factura")


class ConversionStatusOut(BaseModel):
    state: ConversionState
    quote_id: Optional[UUID] = None
    access_approved: bool = False
    is_converting: bool = False


class ConversionActionOut(BaseModel):
    performed: bool
    status: ConversionStatusOut


class ConversionSessionClosedOut(BaseModel):
    session_id: str
    closed: bool


class ConversionResult(BaseModel):
    quote_id: UUID
    invoice_id: Optional[str] = None
    persisted: bool
    notification: ConversionNotification


class ConversionConfirmOut(BaseModel):
    performed: bool
    result: Optional[ConversionResult] = None
    status: ConversionStatusOut
