"""
Reconciliación de cotizaciones convertidas

Mantiene el invariante "una cotización marcada como convertida referencia una
factura existente". Se ejecuta con cada snapshot publicado por el Record Store
(no por temporizador): si la factura referenciada por Quote.invoice_id ya no
existe, la cotización vuelve a un estado convertible.

Las escrituras son best-effort: si fallan se registran y la misma corrección
se reintenta en el siguiente cambio. Reconciliar una cotización ya
reconciliada no escribe nada.
"""

import logging
from typing import Any, Dict, List, Optional

from app.modules.quotes.conversion import ConversionOverlay
from app.modules.quotes.schemas import QuoteOut, QuoteStatus

logger = logging.getLogger(__name__)


def find_orphaned_quotes(snapshot) -> List[QuoteOut]:
    """Cotizaciones con invoice_id cuya factura no está en el snapshot"""
    live_ids = snapshot.invoice_ids()
    return [q for q in snapshot.quotes if q.invoice_id and q.invoice_id not in live_ids]


def reversal_fields(quote: QuoteOut) -> Dict[str, Any]:
    """Cambios que devuelven la cotización al estado previo a la conversión"""
    fields: Dict[str, Any] = {"converted": False, "invoice_id": ""}
    # Otros estados son independientes de la conversión y no se tocan
    if quote.status == QuoteStatus.CONVERTED:
        fields["status"] = QuoteStatus.ACCEPTED
    return fields


class ReconciliationSweep:
    """Barrido de consistencia suscrito al Record Store de una empresa"""

    def __init__(self, store):
        self.store = store
        self._overlays: List[ConversionOverlay] = []
        self._running = False
        self._rerun = False

    def attach(self, overlay: ConversionOverlay) -> None:
        if overlay not in self._overlays:
            self._overlays.append(overlay)

    def detach(self, overlay: ConversionOverlay) -> None:
        if overlay in self._overlays:
            self._overlays.remove(overlay)

    def start(self) -> None:
        self.store.subscribe(self.on_snapshot)

    def stop(self) -> None:
        self.store.unsubscribe(self.on_snapshot)

    async def on_snapshot(self, snapshot) -> None:
        await self.run(snapshot)

    async def run(self, snapshot=None) -> List[Any]:
        """
        Ejecuta el barrido y devuelve los ids reconciliados.

        Las propias escrituras del barrido publican snapshots nuevos; mientras
        hay un barrido en curso esos disparos se agrupan en una sola pasada
        extra sobre el snapshot más reciente.
        """
        if self._running:
            self._rerun = True
            return []

        self._running = True
        reconciled: List[Any] = []
        try:
            while True:
                self._rerun = False
                if snapshot is None:
                    snapshot = await self.store.get_snapshot()
                reconciled.extend(await self._sweep(snapshot))
                if not self._rerun:
                    break
                snapshot = None
        finally:
            self._running = False
        return reconciled

    async def _sweep(self, snapshot) -> List[Any]:
        reconciled = []
        for quote in find_orphaned_quotes(snapshot):
            logger.info(
                f"Cotización {quote.number} ({quote.id}) referencia la factura "
                f"{quote.invoice_id}, que ya no existe; se revierte la conversión"
            )
            # La UI reactiva la conversión sin esperar a la escritura
            for overlay in self._overlays:
                overlay.discard(quote.id)

            if await self._write(quote):
                reconciled.append(quote.id)
        return reconciled

    async def _write(self, quote: QuoteOut) -> bool:
        try:
            await self.store.update_quote(quote.id, reversal_fields(quote))
            return True
        except Exception as e:
            logger.warning(f"No se pudo reconciliar la cotización {quote.id}, se reintentará en el próximo cambio: {e}")
            return False


async def reconcile_store(store, overlays: Optional[List[ConversionOverlay]] = None) -> List[Any]:
    """Pasada única sobre el estado actual del store (tareas programadas)"""
    sweep = ReconciliationSweep(store)
    for overlay in overlays or []:
        sweep.attach(overlay)
    return await sweep.run()
