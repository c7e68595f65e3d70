"""
Servicios de negocio para el módulo de Cotizaciones (Quotes)

- BillingRegistry: un BillingContext por empresa (Record Store + barrido de
  reconciliación suscrito a él)
- BillingContext: sesiones de UI de la empresa; cada sesión tiene su overlay,
  su tracker y su flujo de conversión
- QuoteService: CRUD de cotizaciones con el estado de conversión de la sesión
"""

from fastapi import HTTPException, status
from typing import Callable, Dict, List, Optional
from uuid import UUID
import asyncio
import logging

from app.core.config import settings
from app.modules.quotes.conversion import ConversionOverlay, ConversionStateTracker
from app.modules.quotes.reconciliation import ReconciliationSweep
from app.modules.quotes.schemas import (
    QuoteCreate, QuoteUpdate, QuoteOut, QuoteDetail, QuoteList, QuoteStatus
)
from app.modules.quotes.store import (
    DuplicateRecordError, InMemoryRecordStore, RecordNotFoundError, RecordStore
)
from app.modules.quotes.workflow import ConversionWorkflow

logger = logging.getLogger(__name__)


def default_store_factory(tenant_id: UUID) -> RecordStore:
    """Record Store según RECORD_STORE_BACKEND"""
    if settings.RECORD_STORE_BACKEND == "memory":
        return InMemoryRecordStore(tenant_id)
    from app.modules.quotes.crud import SqlAlchemyRecordStore
    return SqlAlchemyRecordStore(tenant_id)


class BillingSession:
    """Estado de una vista: overlay local, tracker y flujo de conversión"""

    def __init__(self, session_id: str, store: RecordStore):
        self.session_id = session_id
        self.overlay = ConversionOverlay()
        self.tracker = ConversionStateTracker(self.overlay)
        self.workflow = ConversionWorkflow(store, self.tracker)


class BillingContext:
    """Record Store de una empresa con su barrido y sus sesiones de UI"""

    def __init__(self, tenant_id: UUID, store: RecordStore, max_sessions: Optional[int] = None):
        self.tenant_id = tenant_id
        self.store = store
        self.sweep = ReconciliationSweep(store)
        self.max_sessions = max_sessions or settings.MAX_SESSIONS_PER_TENANT
        # Orden de uso: la primera es la menos reciente
        self.sessions: Dict[str, BillingSession] = {}

    async def start(self) -> None:
        # El barrido se suscribe primero: corre antes que los trackers
        self.sweep.start()
        reconciled = await self.sweep.run()
        if reconciled:
            logger.info(f"Reconciliación inicial para empresa {self.tenant_id}: {len(reconciled)} cotizaciones")

    def session(self, session_id: str) -> BillingSession:
        session = self.sessions.pop(session_id, None)
        if session is None:
            session = BillingSession(session_id, self.store)
            self.sweep.attach(session.overlay)
            self.store.subscribe(session.tracker.observe)
        self.sessions[session_id] = session
        self._evict_idle_sessions()
        return session

    def _evict_idle_sessions(self) -> None:
        """Cierra las sesiones menos usadas por encima del límite, nunca una que esté convirtiendo"""
        excess = len(self.sessions) - self.max_sessions
        if excess <= 0:
            return
        for session_id, session in list(self.sessions.items())[:-1]:
            if excess <= 0:
                break
            if session.workflow.is_converting:
                continue
            self.close_session(session_id)
            excess -= 1
            logger.debug(f"Sesión {session_id} de la empresa {self.tenant_id} cerrada por inactividad")

    def close_session(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        self.sweep.detach(session.overlay)
        self.store.unsubscribe(session.tracker.observe)
        return True


class BillingRegistry:
    """Contextos de facturación por empresa, creados bajo demanda"""

    def __init__(self, store_factory: Callable[[UUID], RecordStore] = None):
        self.store_factory = store_factory or default_store_factory
        self._contexts: Dict[UUID, BillingContext] = {}
        self._lock = asyncio.Lock()

    async def context_for(self, tenant_id: UUID) -> BillingContext:
        context = self._contexts.get(tenant_id)
        if context is not None:
            return context
        async with self._lock:
            context = self._contexts.get(tenant_id)
            if context is None:
                context = BillingContext(tenant_id, self.store_factory(tenant_id))
                await context.start()
                self._contexts[tenant_id] = context
        return context


billing_registry = BillingRegistry()


def get_billing_registry() -> BillingRegistry:
    return billing_registry


class QuoteService:
    """Servicio para gestión de cotizaciones de una sesión"""

    def __init__(self, store: RecordStore, session: BillingSession):
        self.store = store
        self.session = session

    def _detail(self, quote: QuoteOut) -> QuoteDetail:
        return QuoteDetail(
            **quote.model_dump(),
            already_converted=self.session.tracker.is_already_converted(quote)
        )

    async def create_quote(self, quote_data: QuoteCreate) -> QuoteDetail:
        """Crear nueva cotización"""
        try:
            quote = await self.store.create_quote(quote_data)
            return self._detail(quote)
        except DuplicateRecordError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except Exception as e:
            logger.error(f"Error creando cotización: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error creando cotización: {str(e)}"
            )

    async def get_quotes(
        self,
        limit: int = 100,
        offset: int = 0,
        status: Optional[QuoteStatus] = None,
        search: Optional[str] = None
    ) -> QuoteList:
        """Listar cotizaciones filtrando por estado y por cliente/número"""
        snapshot = await self.store.get_snapshot()
        quotes: List[QuoteOut] = list(snapshot.quotes)

        if status:
            quotes = [q for q in quotes if q.status == status]
        if search:
            term = search.lower()
            quotes = [
                q for q in quotes
                if term in q.client_name.lower() or term in q.number.lower()
            ]

        quotes.sort(key=lambda q: (q.date, q.number), reverse=True)
        return QuoteList(
            items=[self._detail(q) for q in quotes[offset:offset + limit]],
            total=len(quotes),
            limit=limit,
            offset=offset
        )

    async def get_quote_by_id(self, quote_id: UUID) -> QuoteDetail:
        quote = await self.store.get_quote(quote_id)
        if not quote:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Cotización no encontrada"
            )
        return self._detail(quote)

    async def update_quote(self, quote_id: UUID, quote_update: QuoteUpdate) -> QuoteDetail:
        await self.get_quote_by_id(quote_id)
        fields = quote_update.model_dump(exclude_unset=True)
        if not fields:
            return await self.get_quote_by_id(quote_id)
        try:
            quote = await self.store.update_quote(quote_id, fields)
            return self._detail(quote)
        except RecordNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cotización no encontrada")
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except Exception as e:
            logger.error(f"Error actualizando cotización {quote_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error actualizando cotización: {str(e)}"
            )

    async def delete_quote(self, quote_id: UUID) -> None:
        try:
            await self.store.delete_quote(quote_id)
        except RecordNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cotización no encontrada")
        except Exception as e:
            logger.error(f"Error eliminando cotización {quote_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Error eliminando cotización: {str(e)}"
            )
