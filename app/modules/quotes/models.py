from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Date, Text, JSON, Numeric, Enum, Uuid, UniqueConstraint
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.quotes.schemas import QuoteStatus


class Quote(Base, TenantMixin, TimestampMixin):
    """
    Cotización de venta.

    Campos de conversión:
    - status: puede valer 'converted' solo tras una conversión exitosa
    - converted: bandera independiente del estado
    - invoice_id: referencia débil (texto, sin FK) a la factura creada;
      cadena vacía mientras no esté convertida
    """
    __tablename__ = "quotes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    number = Column(String(50), nullable=False)
    client_name = Column(String(200), nullable=False)
    date = Column(Date, nullable=False, default=date.today)
    valid_until = Column(Date, nullable=True)

    status = Column(Enum(QuoteStatus), nullable=False, default=QuoteStatus.DRAFT)
    converted = Column(Boolean, nullable=False, default=False)
    invoice_id = Column(String(64), nullable=False, default="", index=True)

    # Entradas inmutables de la conversión
    items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    taxes_total = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_quote_tenant_number"),
    )
