"""
Fixtures compartidas para las pruebas de cotizaciones y facturas
"""
import os

# Configuración de pruebas antes de importar la aplicación
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RECORD_STORE_BACKEND", "memory")
os.environ.setdefault("DEBUG", "false")

from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio

from app.modules.quotes.schemas import QuoteCreate, QuoteLineItem, QuoteStatus
from app.modules.quotes.store import InMemoryRecordStore


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def store(tenant_id):
    return InMemoryRecordStore(tenant_id, invoice_prefix="INV-")


@pytest.fixture
def quote_data():
    """Cotización aceptada lista para convertir"""
    def _make(number="Q1", status=QuoteStatus.ACCEPTED, client_name="Atelier Benali"):
        return QuoteCreate(
            number=number,
            client_name=client_name,
            status=status,
            tax_rate=Decimal("20"),
            items=[
                QuoteLineItem(description="Pose carrelage", quantity=Decimal("12"), unit_price=Decimal("150")),
                QuoteLineItem(description="Plinthes", quantity=Decimal("3"), unit_price=Decimal("40.50")),
            ]
        )
    return _make


@pytest_asyncio.fixture
async def accepted_quote(store, quote_data):
    return await store.create_quote(quote_data())
