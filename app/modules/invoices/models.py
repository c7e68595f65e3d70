from app.database.database import Base
from sqlalchemy import Column, Integer, String, Date, Text, JSON, Numeric, Enum, Uuid, UniqueConstraint
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.invoices.schemas import InvoiceStatus


class Invoice(Base, TenantMixin, TimestampMixin):
    """
    Factura de venta.

    No guarda referencia a la cotización de origen: la relación vive solo en
    Quote.invoice_id (referencia débil). Borrar una factura nunca borra la
    cotización; la reconciliación se encarga de volverla convertible.
    """
    __tablename__ = "invoices"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    number = Column(String(50), nullable=False)
    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    client_name = Column(String(200), nullable=False)

    issue_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)

    # Copia inmutable de los ítems de la cotización
    items = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="MAD")

    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    taxes_total = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "number", name="uq_invoice_tenant_number"),
    )


class InvoiceSequence(Base, TenantMixin):
    """Secuencia de numeración de facturas por empresa"""
    __tablename__ = "invoice_sequences"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    current_number = Column(Integer, nullable=False, default=0)
    prefix = Column(String(10), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_invoice_sequence_tenant"),
    )
