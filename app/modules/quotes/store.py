"""
Record Store de cotizaciones y facturas

Fuente de verdad única para las colecciones de Quotes e Invoices de una
empresa. El núcleo de conversión depende solo de esta interfaz:

- Lectura: snapshots inmutables (quotes, invoices)
- Escritura: create/update/delete de cotizaciones, conversión a factura y
  borrado de facturas (gestión externa de facturas)
- Observación: cada mutación confirmada publica un snapshot nuevo a los
  suscriptores (reconciliación, overlays de sesión)

Implementaciones:
- InMemoryRecordStore: en memoria, para pruebas y RECORD_STORE_BACKEND=memory
- SqlAlchemyRecordStore (crud.py): PostgreSQL vía SQLAlchemy async
"""

import abc
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4

from app.core.config import settings
from app.modules.invoices.schemas import InvoiceOut, InvoiceStatus
from app.modules.invoices.service import format_invoice_number
from app.modules.quotes.schemas import QuoteCreate, QuoteOut, QuoteStatus

logger = logging.getLogger(__name__)


class RecordNotFoundError(LookupError):
    """La cotización o factura no existe para esta empresa"""


class DuplicateRecordError(ValueError):
    """Violación de unicidad (p. ej. número de cotización repetido)"""


# Campos que update_quote acepta; el resto de la cotización es inmutable
QUOTE_WRITABLE_FIELDS = frozenset(
    {"client_name", "valid_until", "status", "notes", "converted", "invoice_id"}
)


@dataclass(frozen=True)
class StoreSnapshot:
    """Vista inmutable de ambas colecciones en un instante"""
    quotes: Tuple[QuoteOut, ...] = ()
    invoices: Tuple[InvoiceOut, ...] = ()

    def invoice_ids(self) -> frozenset:
        return frozenset(str(invoice.id) for invoice in self.invoices)

    def find_quote(self, quote_id: Any) -> Optional[QuoteOut]:
        return next((q for q in self.quotes if q.id == quote_id), None)


SnapshotHandler = Callable[[StoreSnapshot], Awaitable[Any]]


def clean_quote_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Valida y normaliza un cambio parcial sobre una cotización"""
    unknown = set(fields) - QUOTE_WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Campos no modificables en cotización: {', '.join(sorted(unknown))}")

    cleaned = dict(fields)
    if "status" in cleaned:
        cleaned["status"] = QuoteStatus(cleaned["status"])
    if "converted" in cleaned:
        cleaned["converted"] = bool(cleaned["converted"])
    if "invoice_id" in cleaned:
        cleaned["invoice_id"] = "" if cleaned["invoice_id"] is None else str(cleaned["invoice_id"])
    return cleaned


class RecordStore(abc.ABC):
    """Interfaz del Record Store con publicación de snapshots tras cada mutación"""

    def __init__(self, tenant_id: UUID):
        self.tenant_id = tenant_id
        self._subscribers: List[SnapshotHandler] = []

    # ===== OBSERVACIÓN =====

    def subscribe(self, handler: SnapshotHandler) -> None:
        if handler not in self._subscribers:
            self._subscribers.append(handler)

    def unsubscribe(self, handler: SnapshotHandler) -> None:
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    async def publish(self) -> None:
        """
        Entrega el snapshot más reciente a todos los suscriptores, en orden.

        Se llama después de confirmar la mutación: ningún fallo de lectura ni
        de un suscriptor llega al llamador. El siguiente cambio vuelve a
        publicar el estado completo.
        """
        if not self._subscribers:
            return
        try:
            snapshot = await self.get_snapshot()
        except Exception as e:
            logger.error(f"Snapshot read failed for tenant {self.tenant_id}, subscribers not notified: {e}")
            return
        for handler in list(self._subscribers):
            try:
                await handler(snapshot)
            except Exception as e:
                logger.exception(f"Snapshot subscriber {handler!r} failed for tenant {self.tenant_id}: {e}")

    # ===== OPERACIONES PÚBLICAS =====

    async def create_quote(self, data: QuoteCreate) -> QuoteOut:
        quote = await self._create_quote(data)
        await self.publish()
        return quote

    async def update_quote(self, quote_id: UUID, fields: Mapping[str, Any]) -> QuoteOut:
        quote = await self._update_quote(quote_id, clean_quote_fields(fields))
        await self.publish()
        return quote

    async def delete_quote(self, quote_id: UUID) -> None:
        await self._delete_quote(quote_id)
        await self.publish()

    async def convert_quote_to_invoice(self, quote_id: UUID) -> InvoiceOut:
        """
        Crea la factura a partir de la cotización. No modifica la cotización:
        registrar la conversión en ella es responsabilidad del flujo.
        """
        invoice = await self._convert_quote_to_invoice(quote_id)
        await self.publish()
        return invoice

    async def delete_invoice(self, invoice_id: Any) -> None:
        await self._delete_invoice(str(invoice_id))
        await self.publish()

    # ===== LECTURA =====

    @abc.abstractmethod
    async def get_snapshot(self) -> StoreSnapshot:
        ...

    @abc.abstractmethod
    async def get_quote(self, quote_id: UUID) -> Optional[QuoteOut]:
        ...

    @abc.abstractmethod
    async def get_invoice(self, invoice_id: Any) -> Optional[InvoiceOut]:
        ...

    # ===== ESCRITURA (implementación) =====

    @abc.abstractmethod
    async def _create_quote(self, data: QuoteCreate) -> QuoteOut:
        ...

    @abc.abstractmethod
    async def _update_quote(self, quote_id: UUID, fields: Dict[str, Any]) -> QuoteOut:
        ...

    @abc.abstractmethod
    async def _delete_quote(self, quote_id: UUID) -> None:
        ...

    @abc.abstractmethod
    async def _convert_quote_to_invoice(self, quote_id: UUID) -> InvoiceOut:
        ...

    @abc.abstractmethod
    async def _delete_invoice(self, invoice_id: str) -> None:
        ...


class InMemoryRecordStore(RecordStore):
    """Record Store en memoria del proceso, una instancia por empresa"""

    def __init__(self, tenant_id: UUID, invoice_prefix: Optional[str] = None):
        super().__init__(tenant_id)
        self.invoice_prefix = invoice_prefix or settings.INVOICE_NUMBER_PREFIX
        self._quotes: Dict[UUID, QuoteOut] = {}
        self._invoices: Dict[str, InvoiceOut] = {}
        self._invoice_sequence = 0

    async def get_snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            quotes=tuple(self._quotes.values()),
            invoices=tuple(self._invoices.values())
        )

    async def get_quote(self, quote_id: UUID) -> Optional[QuoteOut]:
        return self._quotes.get(quote_id)

    async def get_invoice(self, invoice_id: Any) -> Optional[InvoiceOut]:
        return self._invoices.get(str(invoice_id))

    def _require_quote(self, quote_id: UUID) -> QuoteOut:
        quote = self._quotes.get(quote_id)
        if quote is None:
            raise RecordNotFoundError(f"Cotización {quote_id} no encontrada")
        return quote

    async def _create_quote(self, data: QuoteCreate) -> QuoteOut:
        if any(q.number == data.number for q in self._quotes.values()):
            raise DuplicateRecordError(f"Ya existe una cotización con número {data.number}")

        now = datetime.now(timezone.utc)
        totals = data.totals()
        quote = QuoteOut(
            id=uuid4(),
            tenant_id=self.tenant_id,
            number=data.number,
            client_name=data.client_name,
            date=data.date,
            valid_until=data.valid_until,
            status=data.status,
            items=data.items,
            subtotal=totals.subtotal,
            taxes_total=totals.taxes_total,
            total_amount=totals.total_amount,
            notes=data.notes,
            created_at=now,
            updated_at=now
        )
        self._quotes[quote.id] = quote
        return quote

    async def _update_quote(self, quote_id: UUID, fields: Dict[str, Any]) -> QuoteOut:
        quote = self._require_quote(quote_id)
        updated = quote.model_copy(update={**fields, "updated_at": datetime.now(timezone.utc)})
        self._quotes[quote_id] = updated
        return updated

    async def _delete_quote(self, quote_id: UUID) -> None:
        self._require_quote(quote_id)
        del self._quotes[quote_id]

    async def _convert_quote_to_invoice(self, quote_id: UUID) -> InvoiceOut:
        quote = self._require_quote(quote_id)

        # Misma cotización ya enlazada a una factura viva: no se crea otra
        existing = self._invoices.get(quote.invoice_id) if quote.invoice_id else None
        if existing is not None:
            return existing

        self._invoice_sequence += 1
        invoice = InvoiceOut(
            id=uuid4(),
            tenant_id=self.tenant_id,
            number=format_invoice_number(self.invoice_prefix, self._invoice_sequence),
            status=InvoiceStatus.DRAFT,
            client_name=quote.client_name,
            issue_date=date.today(),
            items=quote.items,
            notes=f"Convertida desde cotización {quote.number}",
            subtotal=quote.subtotal,
            taxes_total=quote.taxes_total,
            total_amount=quote.total_amount,
            created_at=datetime.now(timezone.utc)
        )
        self._invoices[str(invoice.id)] = invoice
        return invoice

    async def _delete_invoice(self, invoice_id: str) -> None:
        if invoice_id not in self._invoices:
            raise RecordNotFoundError(f"Factura {invoice_id} no encontrada")
        del self._invoices[invoice_id]
