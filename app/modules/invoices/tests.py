"""
Tests para el módulo de Facturas y el Record Store SQL

Cubren:
- Listado, búsqueda y borrado de facturas (InvoiceService)
- Numeración secuencial por empresa
- SqlAlchemyRecordStore sobre SQLite (aiosqlite): aislamiento por empresa,
  conversión idempotente y reconciliación tras borrar facturas
"""

from uuid import uuid4

import pytest
import pytest_asyncio
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.modules.invoices.models  # noqa: F401
import app.modules.quotes.models  # noqa: F401
from app.database.database import Base
from app.modules.invoices.schemas import InvoiceStatus
from app.modules.invoices.service import InvoiceService, format_invoice_number
from app.modules.quotes.crud import SqlAlchemyRecordStore
from app.modules.quotes.schemas import QuoteStatus
from app.modules.quotes.service import BillingContext
from app.modules.quotes.store import DuplicateRecordError, RecordNotFoundError
from app.modules.quotes.tasks import reconcile_tenants


# ===== FIXTURES =====

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sql_store(tenant_id, session_factory):
    return SqlAlchemyRecordStore(tenant_id, session_factory=session_factory, invoice_prefix="FAC-")


async def _convert(store, quote_id):
    """Conversión con el mismo registro que hace el flujo"""
    invoice = await store.convert_quote_to_invoice(quote_id)
    await store.update_quote(quote_id, {
        "converted": True, "status": QuoteStatus.CONVERTED, "invoice_id": str(invoice.id)
    })
    return invoice


# ===== TESTS DE NUMERACIÓN =====

class TestInvoiceNumbering:

    def test_format(self):
        assert format_invoice_number("INV-", 1) == "INV-000001"
        assert format_invoice_number("FAC-", 1234) == "FAC-001234"
        assert format_invoice_number(None, 7) == "INV-000007"

    @pytest.mark.asyncio
    async def test_in_memory_sequence(self, store, quote_data):
        """Las facturas se numeran en orden por empresa"""
        first = await store.create_quote(quote_data("Q1"))
        second = await store.create_quote(quote_data("Q2"))

        assert (await store.convert_quote_to_invoice(first.id)).number == "INV-000001"
        assert (await store.convert_quote_to_invoice(second.id)).number == "INV-000002"


# ===== TESTS DEL SERVICIO =====

class TestInvoiceService:
    """Tests para InvoiceService sobre el store en memoria"""

    @pytest.mark.asyncio
    async def test_list_and_search(self, store, quote_data):
        """Buscar por cliente o número y filtrar por estado"""
        for number, client in (("Q1", "Atelier Benali"), ("Q2", "Riad Zitoun")):
            quote = await store.create_quote(quote_data(number, client_name=client))
            await _convert(store, quote.id)

        service = InvoiceService(store)

        result = await service.get_invoices()
        assert result.total == 2
        assert [inv.number for inv in result.invoices] == ["INV-000002", "INV-000001"]

        result = await service.get_invoices(search="zitoun")
        assert [inv.client_name for inv in result.invoices] == ["Riad Zitoun"]

        result = await service.get_invoices(status=InvoiceStatus.PAID)
        assert result.total == 0

        result = await service.get_invoices(limit=1, offset=1)
        assert result.total == 2
        assert [inv.number for inv in result.invoices] == ["INV-000001"]

    @pytest.mark.asyncio
    async def test_invoice_copies_quote(self, store, accepted_quote):
        """La factura es un borrador con cliente, ítems y totales de la cotización"""
        invoice = await store.convert_quote_to_invoice(accepted_quote.id)

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.client_name == accepted_quote.client_name
        assert invoice.items == accepted_quote.items
        assert invoice.total_amount == accepted_quote.total_amount
        assert accepted_quote.number in invoice.notes

    @pytest.mark.asyncio
    async def test_get_unknown_invoice(self, store):
        service = InvoiceService(store)
        with pytest.raises(HTTPException) as exc_info:
            await service.get_invoice_by_id(uuid4())
        assert exc_info.value.status_code == 404

        with pytest.raises(HTTPException) as exc_info:
            await service.delete_invoice(uuid4())
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_reports_reconciled_quotes(self, store, tenant_id, accepted_quote):
        """Borrar la factura devuelve las cotizaciones que vuelven a ser convertibles"""
        context = BillingContext(tenant_id, store)
        await context.start()
        invoice = await _convert(store, accepted_quote.id)

        result = await InvoiceService(store).delete_invoice(invoice.id)

        assert result.deleted is True
        assert result.reconciled_quote_ids == [accepted_quote.id]
        assert await store.get_invoice(invoice.id) is None
        assert (await store.get_quote(accepted_quote.id)).status == QuoteStatus.ACCEPTED


# ===== TESTS DEL STORE SQL =====

class TestSqlAlchemyRecordStore:
    """Tests del Record Store SQL con SQLite en archivo temporal"""

    @pytest.mark.asyncio
    async def test_create_and_read(self, sql_store, quote_data):
        quote = await sql_store.create_quote(quote_data())

        stored = await sql_store.get_quote(quote.id)
        assert stored.number == "Q1"
        assert stored.status == QuoteStatus.ACCEPTED
        assert stored.converted is False
        assert stored.invoice_id == ""
        assert stored.total_amount == quote.total_amount
        assert len(stored.items) == 2

        assert await sql_store.get_quote(uuid4()) is None
        assert await sql_store.get_quote("not-a-uuid") is None

    @pytest.mark.asyncio
    async def test_duplicate_number(self, sql_store, quote_data):
        await sql_store.create_quote(quote_data())
        with pytest.raises(DuplicateRecordError):
            await sql_store.create_quote(quote_data())

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, sql_store, session_factory, quote_data):
        """Cada empresa ve solo sus registros; los números pueden repetirse entre empresas"""
        other = SqlAlchemyRecordStore(uuid4(), session_factory=session_factory)

        mine = await sql_store.create_quote(quote_data())
        theirs = await other.create_quote(quote_data())

        snapshot = await sql_store.get_snapshot()
        assert [q.id for q in snapshot.quotes] == [mine.id]
        assert await sql_store.get_quote(theirs.id) is None
        with pytest.raises(RecordNotFoundError):
            await sql_store.update_quote(theirs.id, {"notes": "x"})

    @pytest.mark.asyncio
    async def test_conversion_is_idempotent_for_linked_quote(self, sql_store, quote_data):
        """Convertir otra vez una cotización enlazada devuelve la misma factura"""
        quote = await sql_store.create_quote(quote_data())

        invoice = await _convert(sql_store, quote.id)
        again = await sql_store.convert_quote_to_invoice(quote.id)

        assert again.id == invoice.id
        assert invoice.number == "FAC-000001"
        assert len((await sql_store.get_snapshot()).invoices) == 1

    @pytest.mark.asyncio
    async def test_reconciliation_after_invoice_deletion(self, sql_store, tenant_id, quote_data):
        """El flujo completo sobre SQL: convertir, borrar la factura y reconvertir"""
        quote = await sql_store.create_quote(quote_data())
        context = BillingContext(tenant_id, sql_store)
        await context.start()
        session = context.session("tab-1")

        assert await session.workflow.request_convert(quote.id) is True
        session.workflow.approve(True)
        result = await session.workflow.confirm_convert()
        assert result.persisted is True
        assert await session.workflow.request_convert(quote.id) is False

        await sql_store.delete_invoice(result.invoice_id)

        stored = await sql_store.get_quote(quote.id)
        assert stored.converted is False
        assert stored.invoice_id == ""
        assert stored.status == QuoteStatus.ACCEPTED
        assert await session.workflow.request_convert(quote.id) is True

        session.workflow.approve(True)
        second = await session.workflow.confirm_convert()
        assert second.invoice_id != result.invoice_id
        assert (await sql_store.get_invoice(second.invoice_id)).number == "FAC-000002"

    @pytest.mark.asyncio
    async def test_scheduled_reconciliation(self, sql_store, tenant_id, session_factory, quote_data):
        """La tarea periódica corrige cotizaciones de todas las empresas"""
        quote = await sql_store.create_quote(quote_data())
        invoice = await _convert(sql_store, quote.id)
        # Sin barrido suscrito: la cotización queda huérfana
        await sql_store.delete_invoice(invoice.id)

        report = await reconcile_tenants(session_factory)

        assert report == {str(tenant_id): [str(quote.id)]}
        stored = await sql_store.get_quote(quote.id)
        assert stored.invoice_id == ""
        assert stored.status == QuoteStatus.ACCEPTED

        assert await reconcile_tenants(session_factory) == {}
