"""
Flujo de conversión cotización → factura

Máquina de estados por sesión de UI:

    idle → requested → awaiting_approval → converting → done
                 ↘ cancel / approve(False) ↙
                          idle

- request_convert: solo si la cotización no está ya convertida (único punto
  que garantiza "como máximo una conversión por cotización")
- approve: aprobación explícita del usuario antes del paso irreversible
- confirm_convert: crea la factura una sola vez (guarda single-flight)
- cancel: descarta la solicitud mientras no se esté convirtiendo
"""

import logging
from typing import Any, Callable, List, Mapping, Optional
from uuid import UUID

from app.modules.quotes.conversion import ConversionStateTracker, is_persisted_as_converted
from app.modules.quotes.schemas import (
    ConversionNotification, ConversionResult, ConversionState, ConversionStatusOut,
    NotificationKind, QuoteStatus
)

logger = logging.getLogger(__name__)

SUCCESS_NOTIFICATION_DURATION_MS = 5000
SUCCESS_MESSAGE = "Cotización convertida en factura correctamente"
ERROR_MESSAGE = "Error al crear la factura."

NotificationListener = Callable[[ConversionNotification], Any]


class ConversionError(Exception):
    """Base de errores del flujo de conversión"""


class InvoiceCreationError(ConversionError):
    """La creación de la factura falló; no se confirmó ningún cambio"""

    def __init__(self, quote_id: Any, cause: Exception):
        self.quote_id = quote_id
        self.cause = cause
        super().__init__(f"Invoice creation failed for quote {quote_id}: {cause}")


def extract_invoice_id(result: Any) -> Optional[str]:
    """Acepta un id suelto, un dict con 'id' o un objeto con atributo id"""
    if result is None:
        return None
    if isinstance(result, (str, UUID)):
        value = result
    elif isinstance(result, Mapping):
        value = result.get("id")
    else:
        value = getattr(result, "id", None)
    return str(value) if value else None


class ConversionWorkflow:
    """Protocolo interactivo de conversión para una sesión de UI"""

    def __init__(self, store, tracker: ConversionStateTracker, listener: NotificationListener = None):
        self.store = store
        self.tracker = tracker
        self._listeners: List[NotificationListener] = [listener] if listener else []

        self.state = ConversionState.IDLE
        self.quote_id: Optional[Any] = None
        self.access_approved = False
        self.is_converting = False
        self.last_notification: Optional[ConversionNotification] = None

    def add_listener(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def status(self) -> ConversionStatusOut:
        return ConversionStatusOut(
            state=self.state,
            quote_id=self.quote_id,
            access_approved=self.access_approved,
            is_converting=self.is_converting
        )

    def is_already_converted(self, quote) -> bool:
        return self.tracker.is_already_converted(quote)

    async def request_convert(self, quote_id: Any) -> bool:
        """Abre la solicitud de conversión; no-op si ya está convertida"""
        if self.is_converting:
            return False

        quote = await self.store.get_quote(quote_id)
        if quote is None:
            return False
        if self.tracker.is_already_converted(quote):
            logger.debug(f"Conversión ignorada: la cotización {quote_id} ya está convertida")
            return False

        self.state = ConversionState.REQUESTED
        self.quote_id = quote.id
        self.access_approved = False
        # La solicitud queda esperando la aprobación explícita
        self.state = ConversionState.AWAITING_APPROVAL
        return True

    def approve(self, approved: bool) -> bool:
        """True afirma la aprobación; False la rechaza y descarta la solicitud"""
        if self.state != ConversionState.AWAITING_APPROVAL:
            return False
        if approved is True:
            self.access_approved = True
        else:
            self._reset()
        return True

    def cancel(self) -> bool:
        if self.state not in (ConversionState.REQUESTED, ConversionState.AWAITING_APPROVAL):
            return False
        self._reset()
        return True

    async def confirm_convert(self) -> Optional[ConversionResult]:
        """
        Crea la factura y registra la conversión.

        Devuelve None si no hay solicitud abierta, falta la aprobación o ya hay
        una conversión en curso. Lanza InvoiceCreationError si la factura no se
        pudo crear; en ese caso la solicitud sigue abierta para reintentar.
        """
        if self.is_converting:
            return None
        if self.state != ConversionState.AWAITING_APPROVAL or self.quote_id is None:
            return None
        if self.access_approved is not True:
            return None

        quote_id = self.quote_id
        self.is_converting = True
        self.state = ConversionState.CONVERTING
        try:
            quote = await self.store.get_quote(quote_id)
            if quote is None or is_persisted_as_converted(quote):
                # Borrada o convertida desde otra sesión mientras se aprobaba
                logger.info(f"Conversión abortada: la cotización {quote_id} cambió antes de confirmar")
                self._reset()
                return None

            try:
                result = await self.store.convert_quote_to_invoice(quote_id)
            except Exception as e:
                logger.error(f"Error creando factura desde cotización {quote_id}: {e}")
                self.state = ConversionState.AWAITING_APPROVAL
                self._emit(ConversionNotification(
                    kind=NotificationKind.ERROR,
                    message=ERROR_MESSAGE,
                    quote_id=quote_id
                ))
                raise InvoiceCreationError(quote_id, e) from e

            invoice_id = extract_invoice_id(result)
            self.tracker.overlay.mark(quote_id)
            persisted = await self._persist(quote_id, invoice_id)

            notification = ConversionNotification(
                kind=NotificationKind.SUCCESS,
                message=SUCCESS_MESSAGE,
                duration_ms=SUCCESS_NOTIFICATION_DURATION_MS,
                quote_id=quote_id,
                invoice_id=invoice_id
            )
            self._reset()
            self.state = ConversionState.DONE
            self._emit(notification)
            logger.info(f"Cotización {quote_id} convertida en factura {invoice_id}")

            return ConversionResult(
                quote_id=quote_id,
                invoice_id=invoice_id,
                persisted=persisted,
                notification=notification
            )
        finally:
            self.is_converting = False

    async def _persist(self, quote_id: Any, invoice_id: Optional[str]) -> bool:
        """Registra la conversión en la cotización (best-effort, sin rollback)"""
        fields = {"converted": True, "status": QuoteStatus.CONVERTED}
        if invoice_id:
            fields["invoice_id"] = invoice_id
        try:
            await self.store.update_quote(quote_id, fields)
            return True
        except Exception as e:
            # La factura ya existe: el overlay mantiene la cotización como convertida
            logger.warning(f"Factura {invoice_id} creada pero no se pudo actualizar la cotización {quote_id}: {e}")
            return False

    def _reset(self) -> None:
        self.state = ConversionState.IDLE
        self.quote_id = None
        self.access_approved = False

    def _emit(self, notification: ConversionNotification) -> None:
        self.last_notification = notification
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.exception(f"Notification listener failed: {e}")
