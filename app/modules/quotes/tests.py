"""
Tests para el módulo de Cotizaciones

Cubren:
- Detección de "ya convertida" (campos persistidos + overlay local)
- Reconciliación cuando la factura enlazada desaparece
- Flujo de conversión: aprobación, single-flight, fallos y reintentos
- Endpoints REST de cotizaciones y conversión

Todas las pruebas usan el Record Store en memoria.
"""

import asyncio
from types import SimpleNamespace
from typing import Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.modules.quotes.conversion import ConversionOverlay, ConversionStateTracker, is_persisted_as_converted
from app.modules.quotes.reconciliation import ReconciliationSweep, find_orphaned_quotes, reversal_fields
from app.modules.quotes.schemas import ConversionState, NotificationKind, QuoteStatus
from app.modules.quotes.service import BillingContext, BillingRegistry, get_billing_registry
from app.modules.quotes.store import InMemoryRecordStore
from app.modules.quotes.workflow import (
    SUCCESS_NOTIFICATION_DURATION_MS, InvoiceCreationError, extract_invoice_id
)


class InstrumentedStore(InMemoryRecordStore):
    """Store en memoria que cuenta llamadas y permite simular latencia y fallos"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.update_calls = 0
        self.convert_calls = 0
        self.fail_updates = 0
        self.fail_converts = 0
        self.update_gate: Optional[asyncio.Event] = None
        self.convert_gate: Optional[asyncio.Event] = None
        self.update_started = asyncio.Event()

    async def _update_quote(self, quote_id, fields):
        self.update_calls += 1
        self.update_started.set()
        if self.update_gate is not None:
            await self.update_gate.wait()
        if self.fail_updates:
            self.fail_updates -= 1
            raise RuntimeError("store unavailable")
        return await super()._update_quote(quote_id, fields)

    async def _convert_quote_to_invoice(self, quote_id):
        self.convert_calls += 1
        if self.convert_gate is not None:
            await self.convert_gate.wait()
        if self.fail_converts:
            self.fail_converts -= 1
            raise RuntimeError("invoice service down")
        return await super()._convert_quote_to_invoice(quote_id)


class SnapshotAfterConvertFailsStore(InMemoryRecordStore):
    """La factura se confirma pero la lectura siguiente del store falla una vez"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_next_snapshot = False

    async def _convert_quote_to_invoice(self, quote_id):
        invoice = await super()._convert_quote_to_invoice(quote_id)
        self.fail_next_snapshot = True
        return invoice

    async def get_snapshot(self):
        if self.fail_next_snapshot:
            self.fail_next_snapshot = False
            raise RuntimeError("store read unavailable")
        return await super().get_snapshot()


# ===== FIXTURES =====

@pytest.fixture
def istore(tenant_id):
    return InstrumentedStore(tenant_id, invoice_prefix="INV-")


async def _context(store, tenant_id):
    context = BillingContext(tenant_id, store)
    await context.start()
    return context


async def _link_to_missing_invoice(store, quote, status=QuoteStatus.CONVERTED):
    """Cotización convertida cuya factura ya no existe"""
    return await store.update_quote(quote.id, {
        "converted": True,
        "status": status,
        "invoice_id": str(uuid4())
    })


# ===== TESTS DEL TRACKER =====

class TestConversionStateTracker:
    """Tests para la detección de cotizaciones ya convertidas"""

    @pytest.mark.asyncio
    async def test_new_quote_is_convertible(self, accepted_quote):
        """Una cotización aceptada sin factura no está convertida"""
        tracker = ConversionStateTracker()
        assert tracker.is_already_converted(accepted_quote) is False

    @pytest.mark.asyncio
    async def test_each_persisted_field_marks_converted(self, accepted_quote):
        """invoice_id, converted o status='converted' bastan por separado"""
        tracker = ConversionStateTracker()
        assert tracker.is_already_converted(accepted_quote.model_copy(update={"invoice_id": "INV-42"}))
        assert tracker.is_already_converted(accepted_quote.model_copy(update={"converted": True}))
        assert tracker.is_already_converted(accepted_quote.model_copy(update={"status": QuoteStatus.CONVERTED}))

    @pytest.mark.asyncio
    async def test_overlay_marks_converted(self, accepted_quote):
        """El overlay local marca la cotización aunque el store no lo refleje"""
        tracker = ConversionStateTracker()
        tracker.overlay.mark(accepted_quote.id)
        assert is_persisted_as_converted(accepted_quote) is False
        assert tracker.is_already_converted(accepted_quote) is True

    @pytest.mark.asyncio
    async def test_overlay_invalidation(self, store, quote_data):
        """El overlay se limpia cuando el snapshot confirma o la cotización desaparece"""
        pending = await store.create_quote(quote_data("Q-PENDING"))
        confirmed = await store.create_quote(quote_data("Q-CONFIRMED"))
        deleted = await store.create_quote(quote_data("Q-DELETED"))

        overlay = ConversionOverlay()
        for quote in (pending, confirmed, deleted):
            overlay.mark(quote.id)

        await store.update_quote(confirmed.id, {"converted": True, "status": "converted", "invoice_id": "INV-1"})
        await store.delete_quote(deleted.id)

        dropped = overlay.invalidate(await store.get_snapshot())

        assert set(dropped) == {confirmed.id, deleted.id}
        assert pending.id in overlay
        assert len(overlay) == 1


# ===== TESTS DE RECONCILIACIÓN =====

class TestReconciliationSweep:
    """Tests para el barrido de cotizaciones con factura inexistente"""

    def test_reversal_fields_keep_independent_status(self):
        """Solo el estado 'converted' se degrada a 'accepted'"""
        converted = SimpleNamespace(status=QuoteStatus.CONVERTED)
        sent = SimpleNamespace(status=QuoteStatus.SENT)

        assert reversal_fields(converted) == {
            "converted": False, "invoice_id": "", "status": QuoteStatus.ACCEPTED
        }
        assert reversal_fields(sent) == {"converted": False, "invoice_id": ""}

    @pytest.mark.asyncio
    async def test_deleted_invoice_restores_convertibility(self, store, accepted_quote):
        """Borrar la factura revierte la cotización en el mismo ciclo de cambio"""
        sweep = ReconciliationSweep(store)
        sweep.start()

        invoice = await store.convert_quote_to_invoice(accepted_quote.id)
        await store.update_quote(accepted_quote.id, {
            "converted": True, "status": QuoteStatus.CONVERTED, "invoice_id": str(invoice.id)
        })
        assert find_orphaned_quotes(await store.get_snapshot()) == []

        await store.delete_invoice(invoice.id)

        quote = await store.get_quote(accepted_quote.id)
        assert quote.converted is False
        assert quote.invoice_id == ""
        assert quote.status == QuoteStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_non_converted_status_is_untouched(self, store, quote_data):
        """Una cotización 'sent' con factura perdida conserva su estado"""
        quote = await store.create_quote(quote_data("Q-SENT", status=QuoteStatus.SENT))
        await _link_to_missing_invoice(store, quote, status=QuoteStatus.SENT)

        reconciled = await ReconciliationSweep(store).run()

        quote = await store.get_quote(quote.id)
        assert reconciled == [quote.id]
        assert quote.status == QuoteStatus.SENT
        assert quote.converted is False
        assert quote.invoice_id == ""

    @pytest.mark.asyncio
    async def test_sweep_discards_overlay_entries(self, store, accepted_quote):
        """El barrido quita la cotización de los overlays adjuntos"""
        await _link_to_missing_invoice(store, accepted_quote)
        overlay = ConversionOverlay()
        overlay.mark(accepted_quote.id)

        sweep = ReconciliationSweep(store)
        sweep.attach(overlay)
        await sweep.run()

        assert accepted_quote.id not in overlay

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, istore, quote_data):
        """Sobre colecciones consistentes el barrido no escribe nada"""
        quote = await istore.create_quote(quote_data())
        await _link_to_missing_invoice(istore, quote)
        sweep = ReconciliationSweep(istore)

        writes_before = istore.update_calls
        assert await sweep.run() == [quote.id]
        assert istore.update_calls == writes_before + 1

        assert await sweep.run() == []
        assert await sweep.run() == []
        assert istore.update_calls == writes_before + 1

    @pytest.mark.asyncio
    async def test_own_writes_do_not_duplicate_corrections(self, istore, quote_data):
        """Los snapshots publicados por el propio barrido no repiten escrituras"""
        first = await istore.create_quote(quote_data("Q-A"))
        second = await istore.create_quote(quote_data("Q-B"))
        await _link_to_missing_invoice(istore, first)
        await _link_to_missing_invoice(istore, second)

        sweep = ReconciliationSweep(istore)
        sweep.start()
        writes_before = istore.update_calls

        reconciled = await sweep.run()

        assert set(reconciled) == {first.id, second.id}
        assert istore.update_calls == writes_before + 2

    @pytest.mark.asyncio
    async def test_failed_write_is_retried_on_next_change(self, istore, quote_data):
        """Un fallo de escritura no se propaga y se corrige en el siguiente cambio"""
        quote = await istore.create_quote(quote_data())
        await _link_to_missing_invoice(istore, quote)

        sweep = ReconciliationSweep(istore)
        sweep.start()
        istore.fail_updates = 1

        assert await sweep.run() == []
        assert (await istore.get_quote(quote.id)).invoice_id != ""

        # Cualquier otro cambio en las colecciones vuelve a disparar el barrido
        await istore.create_quote(quote_data("Q-OTHER"))

        quote = await istore.get_quote(quote.id)
        assert quote.invoice_id == ""
        assert quote.status == QuoteStatus.ACCEPTED


# ===== TESTS DEL FLUJO DE CONVERSIÓN =====

class TestConversionWorkflow:
    """Tests para el flujo de conversión cotización → factura"""

    @pytest.mark.asyncio
    async def test_full_conversion(self, istore, tenant_id, quote_data):
        """Solicitud, aprobación y confirmación crean la factura y marcan la cotización"""
        quote = await istore.create_quote(quote_data())
        context = await _context(istore, tenant_id)
        session = context.session("tab-1")
        workflow = session.workflow
        notifications = []
        workflow.add_listener(notifications.append)

        assert await workflow.request_convert(quote.id) is True
        assert workflow.state == ConversionState.AWAITING_APPROVAL
        assert workflow.approve(True) is True

        result = await workflow.confirm_convert()

        invoice = (await istore.get_snapshot()).invoices[0]
        assert result.invoice_id == str(invoice.id)
        assert result.persisted is True
        assert invoice.number == "INV-000001"
        assert invoice.total_amount == quote.total_amount

        stored = await istore.get_quote(quote.id)
        assert stored.converted is True
        assert stored.status == QuoteStatus.CONVERTED
        assert stored.invoice_id == str(invoice.id)
        assert session.tracker.is_already_converted(stored) is True

        assert workflow.state == ConversionState.DONE
        assert workflow.is_converting is False
        assert [n.kind for n in notifications] == [NotificationKind.SUCCESS]
        assert notifications[0].duration_ms == SUCCESS_NOTIFICATION_DURATION_MS == 5000

    @pytest.mark.asyncio
    async def test_overlay_reflects_conversion_before_store_write(self, istore, tenant_id, quote_data):
        """La sesión ve la cotización convertida antes de que el store confirme"""
        quote = await istore.create_quote(quote_data())
        session = (await _context(istore, tenant_id)).session("tab-1")
        await session.workflow.request_convert(quote.id)
        session.workflow.approve(True)

        istore.update_gate = asyncio.Event()
        task = asyncio.create_task(session.workflow.confirm_convert())
        await asyncio.wait_for(istore.update_started.wait(), timeout=1)

        stale = await istore.get_quote(quote.id)
        assert stale.converted is False
        assert session.tracker.is_already_converted(stale) is True

        istore.update_gate.set()
        result = await task
        assert result.persisted is True

    @pytest.mark.asyncio
    async def test_already_converted_quote_is_never_reconverted(self, istore, tenant_id, quote_data):
        """Una cotización convertida no vuelve a invocar la creación de factura"""
        quote = await istore.create_quote(quote_data())
        workflow = (await _context(istore, tenant_id)).session("tab-1").workflow

        await workflow.request_convert(quote.id)
        workflow.approve(True)
        await workflow.confirm_convert()
        assert istore.convert_calls == 1

        for _ in range(3):
            assert await workflow.request_convert(quote.id) is False
            assert await workflow.confirm_convert() is None

        assert istore.convert_calls == 1
        assert workflow.state == ConversionState.DONE
        assert len((await istore.get_snapshot()).invoices) == 1

    @pytest.mark.asyncio
    async def test_confirm_requires_affirmative_approval(self, istore, tenant_id, quote_data):
        """Sin aprobación explícita confirm_convert no hace nada"""
        quote = await istore.create_quote(quote_data())
        workflow = (await _context(istore, tenant_id)).session("tab-1").workflow

        assert await workflow.confirm_convert() is None

        await workflow.request_convert(quote.id)
        assert workflow.access_approved is False
        assert await workflow.confirm_convert() is None
        assert istore.convert_calls == 0
        assert workflow.state == ConversionState.AWAITING_APPROVAL

    @pytest.mark.asyncio
    async def test_declining_discards_the_request(self, istore, tenant_id, quote_data):
        """Rechazar o cancelar vuelve a idle sin efectos"""
        quote = await istore.create_quote(quote_data())
        workflow = (await _context(istore, tenant_id)).session("tab-1").workflow

        await workflow.request_convert(quote.id)
        assert workflow.approve(False) is True
        assert workflow.state == ConversionState.IDLE
        assert workflow.quote_id is None

        await workflow.request_convert(quote.id)
        workflow.approve(True)
        assert workflow.cancel() is True
        assert workflow.state == ConversionState.IDLE
        assert await workflow.confirm_convert() is None
        assert istore.convert_calls == 0
        assert istore.update_calls == 0

    @pytest.mark.asyncio
    async def test_single_flight_guard(self, istore, tenant_id, quote_data):
        """Confirmaciones repetidas durante la conversión crean una sola factura"""
        quote = await istore.create_quote(quote_data())
        workflow = (await _context(istore, tenant_id)).session("tab-1").workflow
        await workflow.request_convert(quote.id)
        workflow.approve(True)

        istore.convert_gate = asyncio.Event()
        first = asyncio.create_task(workflow.confirm_convert())
        await asyncio.sleep(0)

        assert workflow.is_converting is True
        assert workflow.state == ConversionState.CONVERTING
        duplicates = await asyncio.gather(*(workflow.confirm_convert() for _ in range(3)))
        assert duplicates == [None, None, None]
        assert workflow.cancel() is False

        istore.convert_gate.set()
        result = await first

        assert result is not None
        assert istore.convert_calls == 1
        assert workflow.is_converting is False

    @pytest.mark.asyncio
    async def test_invoice_creation_failure_allows_retry(self, istore, tenant_id, quote_data):
        """Si la factura no se crea no cambia nada y se puede reintentar"""
        quote = await istore.create_quote(quote_data())
        workflow = (await _context(istore, tenant_id)).session("tab-1").workflow
        notifications = []
        workflow.add_listener(notifications.append)
        await workflow.request_convert(quote.id)
        workflow.approve(True)

        istore.fail_converts = 1
        with pytest.raises(InvoiceCreationError):
            await workflow.confirm_convert()

        assert workflow.is_converting is False
        assert workflow.state == ConversionState.AWAITING_APPROVAL
        assert notifications[-1].kind == NotificationKind.ERROR
        assert await istore.get_quote(quote.id) == quote
        assert (await istore.get_snapshot()).invoices == ()

        result = await workflow.confirm_convert()

        assert result is not None
        assert istore.convert_calls == 2
        assert (await istore.get_quote(quote.id)).converted is True

    @pytest.mark.asyncio
    async def test_persistence_failure_is_swallowed(self, istore, tenant_id, quote_data):
        """La factura existe aunque la cotización no se pueda actualizar"""
        quote = await istore.create_quote(quote_data())
        session = (await _context(istore, tenant_id)).session("tab-1")
        await session.workflow.request_convert(quote.id)
        session.workflow.approve(True)

        istore.fail_updates = 1
        result = await session.workflow.confirm_convert()

        assert result.persisted is False
        assert result.notification.kind == NotificationKind.SUCCESS
        stored = await istore.get_quote(quote.id)
        assert stored.converted is False
        assert session.tracker.is_already_converted(stored) is True
        assert await session.workflow.request_convert(quote.id) is False

    @pytest.mark.asyncio
    async def test_conversion_by_another_session_aborts_pending_confirm(self, istore, tenant_id, quote_data):
        """Una sesión que aprobó tarde no crea una segunda factura"""
        quote = await istore.create_quote(quote_data())
        context = await _context(istore, tenant_id)
        late, fast = context.session("late"), context.session("fast")

        await late.workflow.request_convert(quote.id)
        late.workflow.approve(True)
        await fast.workflow.request_convert(quote.id)
        fast.workflow.approve(True)
        await fast.workflow.confirm_convert()

        assert await late.workflow.confirm_convert() is None
        assert late.workflow.state == ConversionState.IDLE
        assert istore.convert_calls == 1

    @pytest.mark.asyncio
    async def test_deleted_invoice_reenables_conversion(self, istore, tenant_id, quote_data):
        """Tras borrar la factura la cotización vuelve a ser convertible"""
        quote = await istore.create_quote(quote_data())
        context = await _context(istore, tenant_id)
        session = context.session("tab-1")
        await session.workflow.request_convert(quote.id)
        session.workflow.approve(True)
        result = await session.workflow.confirm_convert()

        await istore.delete_invoice(result.invoice_id)

        stored = await istore.get_quote(quote.id)
        assert stored.converted is False
        assert stored.invoice_id == ""
        assert stored.status == QuoteStatus.ACCEPTED
        assert session.tracker.is_already_converted(stored) is False
        assert await session.workflow.request_convert(quote.id) is True

    @pytest.mark.asyncio
    async def test_closed_session_stops_observing(self, store, tenant_id):
        """Cerrar una sesión la desconecta del store y del barrido"""
        context = await _context(store, tenant_id)
        session = context.session("tab-1")

        assert context.close_session("tab-1") is True
        assert context.close_session("tab-1") is False
        assert session.overlay not in context.sweep._overlays
        assert session.tracker.observe not in store._subscribers

    @pytest.mark.asyncio
    async def test_snapshot_failure_after_commit_is_not_a_creation_failure(self, tenant_id, quote_data):
        """Si la lectura posterior a la conversión falla, la factura ya creada cuenta como éxito"""
        store = SnapshotAfterConvertFailsStore(tenant_id, invoice_prefix="INV-")
        quote = await store.create_quote(quote_data())
        workflow = (await _context(store, tenant_id)).session("tab-1").workflow
        notifications = []
        workflow.add_listener(notifications.append)

        await workflow.request_convert(quote.id)
        workflow.approve(True)
        result = await workflow.confirm_convert()

        assert result is not None
        assert result.persisted is True
        assert [n.kind for n in notifications] == [NotificationKind.SUCCESS]
        assert len((await store.get_snapshot()).invoices) == 1

        # Un segundo intento no crea otra factura
        assert await workflow.request_convert(quote.id) is False
        assert await workflow.confirm_convert() is None
        assert len((await store.get_snapshot()).invoices) == 1

    @pytest.mark.asyncio
    async def test_publish_swallows_snapshot_errors(self, tenant_id, quote_data):
        """Una mutación confirmada devuelve su resultado aunque no se pueda publicar"""
        store = SnapshotAfterConvertFailsStore(tenant_id)
        received = []

        async def handler(snapshot):
            received.append(snapshot)

        store.subscribe(handler)
        quote = await store.create_quote(quote_data())

        invoice = await store.convert_quote_to_invoice(quote.id)

        assert await store.get_invoice(invoice.id) == invoice
        assert len(received) == 1


class TestSessionLifecycle:
    """Las sesiones de UI no crecen sin límite"""

    @pytest.mark.asyncio
    async def test_least_recently_used_sessions_are_evicted(self, store, tenant_id):
        context = BillingContext(tenant_id, store, max_sessions=2)
        await context.start()

        first = context.session("a")
        context.session("b")
        context.session("a")
        context.session("c")

        assert list(context.sessions) == ["a", "c"]
        assert len(store._subscribers) == 3
        assert first.overlay in context.sweep._overlays

    @pytest.mark.asyncio
    async def test_converting_session_is_never_evicted(self, store, tenant_id):
        context = BillingContext(tenant_id, store, max_sessions=2)
        await context.start()

        busy = context.session("busy")
        busy.workflow.is_converting = True
        context.session("b")
        context.session("c")

        assert "busy" in context.sessions
        assert "b" not in context.sessions
        assert len(context.sessions) == 2


class TestExtractInvoiceId:
    """La capacidad de conversión puede devolver un id o un objeto con id"""

    def test_accepted_shapes(self):
        invoice_uuid = uuid4()
        assert extract_invoice_id("INV-42") == "INV-42"
        assert extract_invoice_id(invoice_uuid) == str(invoice_uuid)
        assert extract_invoice_id({"id": "INV-42"}) == "INV-42"
        assert extract_invoice_id(SimpleNamespace(id="INV-42")) == "INV-42"

    def test_missing_id(self):
        assert extract_invoice_id(None) is None
        assert extract_invoice_id("") is None
        assert extract_invoice_id({"number": "INV-42"}) is None


# ===== TESTS DE ENDPOINTS =====

@pytest.fixture
def registry():
    return BillingRegistry(lambda tenant: InMemoryRecordStore(tenant, invoice_prefix="INV-"))


@pytest.fixture
def client(registry):
    app.dependency_overrides[get_billing_registry] = lambda: registry
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def headers(tenant_id):
    return {"X-Company-ID": str(tenant_id), "X-Session-ID": "tab-1"}


@pytest.fixture
def quote_payload():
    return {
        "number": "DEV-2026-001",
        "client_name": "Atelier Benali",
        "status": "accepted",
        "tax_rate": "20",
        "items": [
            {"description": "Pose carrelage", "quantity": "12", "unit_price": "150"}
        ]
    }


class TestQuotesAPI:
    """Tests de los endpoints de cotizaciones y conversión"""

    def test_missing_company_header(self, client):
        response = client.get("/quotes/")
        assert response.status_code == 400

    def test_create_and_filter_quotes(self, client, headers, quote_payload):
        """Crear, buscar y filtrar por estado"""
        response = client.post("/quotes/", json=quote_payload, headers=headers)
        assert response.status_code == 201
        created = response.json()
        assert created["already_converted"] is False
        assert created["total_amount"] in ("2160.00", 2160.0, "2160")

        draft = {**quote_payload, "number": "DEV-2026-002", "client_name": "Riad Zitoun", "status": "draft"}
        assert client.post("/quotes/", json=draft, headers=headers).status_code == 201

        listing = client.get("/quotes/", params={"search": "benali"}, headers=headers).json()
        assert listing["total"] == 1
        assert listing["items"][0]["number"] == "DEV-2026-001"

        drafts = client.get("/quotes/", params={"status": "draft"}, headers=headers).json()
        assert [q["number"] for q in drafts["items"]] == ["DEV-2026-002"]

    def test_duplicate_number_rejected(self, client, headers, quote_payload):
        assert client.post("/quotes/", json=quote_payload, headers=headers).status_code == 201
        assert client.post("/quotes/", json=quote_payload, headers=headers).status_code == 400

    def test_conversion_fields_are_not_writable(self, client, headers, quote_payload):
        """El estado 'converted' no se asigna a mano"""
        quote_id = client.post("/quotes/", json=quote_payload, headers=headers).json()["id"]

        response = client.patch(f"/quotes/{quote_id}", json={"status": "converted"}, headers=headers)
        assert response.status_code == 422

        response = client.patch(f"/quotes/{quote_id}", json={"status": "sent"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "sent"

    def test_unknown_quote(self, client, headers):
        response = client.get(f"/quotes/{uuid4()}", headers=headers)
        assert response.status_code == 404
        response = client.post(f"/quotes/{uuid4()}/conversion/request", headers=headers)
        assert response.status_code == 404

    def test_conversion_and_reconciliation_flow(self, client, headers, quote_payload):
        """Conversión completa por HTTP y reconciliación al borrar la factura"""
        quote_id = client.post("/quotes/", json=quote_payload, headers=headers).json()["id"]

        response = client.post(f"/quotes/{quote_id}/conversion/request", headers=headers)
        assert response.json()["performed"] is True
        assert response.json()["status"]["state"] == "awaiting_approval"

        # Sin aprobación no se crea nada
        response = client.post("/quotes/conversion/confirm", headers=headers)
        assert response.json()["performed"] is False

        client.post("/quotes/conversion/approve", json={"approved": True}, headers=headers)
        response = client.post("/quotes/conversion/confirm", headers=headers)
        body = response.json()
        assert body["performed"] is True
        assert body["result"]["notification"]["duration_ms"] == 5000
        invoice_id = body["result"]["invoice_id"]

        quote = client.get(f"/quotes/{quote_id}", headers=headers).json()
        assert quote["status"] == "converted"
        assert quote["invoice_id"] == invoice_id
        assert quote["already_converted"] is True

        response = client.post(f"/quotes/{quote_id}/conversion/request", headers=headers)
        assert response.json()["performed"] is False
        assert client.get("/invoices/", headers=headers).json()["total"] == 1

        response = client.delete(f"/invoices/{invoice_id}", headers=headers)
        assert response.status_code == 200
        assert response.json()["reconciled_quote_ids"] == [quote_id]

        quote = client.get(f"/quotes/{quote_id}", headers=headers).json()
        assert quote["status"] == "accepted"
        assert quote["invoice_id"] == ""
        assert quote["converted"] is False
        assert quote["already_converted"] is False

    def test_sessions_are_independent(self, client, headers, quote_payload):
        """Cada X-Session-ID tiene su propio modal de conversión"""
        quote_id = client.post("/quotes/", json=quote_payload, headers=headers).json()["id"]
        client.post(f"/quotes/{quote_id}/conversion/request", headers=headers)

        other = {**headers, "X-Session-ID": "tab-2"}
        assert client.get("/quotes/conversion", headers=other).json()["state"] == "idle"
        assert client.get("/quotes/conversion", headers=headers).json()["state"] == "awaiting_approval"

        response = client.post("/quotes/conversion/cancel", headers=headers)
        assert response.json()["performed"] is True
        assert response.json()["status"]["state"] == "idle"

    def test_close_session_releases_its_state(self, client, registry, headers, tenant_id):
        """Cerrar la sesión la quita del contexto de la empresa"""
        client.get("/quotes/conversion", headers=headers)
        context = registry._contexts[tenant_id]
        assert "tab-1" in context.sessions

        response = client.delete("/quotes/conversion/session", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"session_id": "tab-1", "closed": True}
        assert "tab-1" not in context.sessions
        assert len(context.store._subscribers) == 1

        response = client.delete("/quotes/conversion/session", headers=headers)
        assert response.json()["closed"] is False

    def test_sessions_are_bounded_per_company(self, client, registry, headers, tenant_id):
        """Muchos X-Session-ID distintos no acumulan sesiones sin límite"""
        for i in range(150):
            client.get("/quotes/conversion", headers={**headers, "X-Session-ID": f"tab-{i}"})

        context = registry._contexts[tenant_id]
        assert len(context.sessions) == context.max_sessions
        assert len(context.store._subscribers) == context.max_sessions + 1
        assert "tab-149" in context.sessions
        assert "tab-0" not in context.sessions

    def test_approval_requires_json_true(self, client, headers, quote_payload):
        """Solo un booleano JSON true aprueba la conversión"""
        quote_id = client.post("/quotes/", json=quote_payload, headers=headers).json()["id"]
        client.post(f"/quotes/{quote_id}/conversion/request", headers=headers)

        for value in ("yes", "on", "true", 1):
            response = client.post("/quotes/conversion/approve", json={"approved": value}, headers=headers)
            assert response.status_code == 422

        status_out = client.get("/quotes/conversion", headers=headers).json()
        assert status_out["access_approved"] is False
        assert client.post("/quotes/conversion/confirm", headers=headers).json()["performed"] is False
