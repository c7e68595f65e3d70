"""
Estado de conversión de cotizaciones

- ConversionOverlay: caché local por sesión de ids marcados como convertidos
  antes de que el Record Store lo confirme
- ConversionStateTracker: decide si una cotización ya está convertida
  combinando los campos persistidos con el overlay
"""

import logging
from typing import Any, Iterator, List, Set

from app.modules.quotes.schemas import QuoteOut, QuoteStatus

logger = logging.getLogger(__name__)


def is_persisted_as_converted(quote: QuoteOut) -> bool:
    """Reglas sobre los campos persistidos, en orden de prioridad"""
    if quote.invoice_id:
        return True
    if quote.converted:
        return True
    return quote.status == QuoteStatus.CONVERTED


class ConversionOverlay:
    """
    Read-through cache keyed by quote id.

    An entry lives only until the authoritative snapshot confirms the
    conversion, the quote disappears, or the reconciliation sweep reverts it.
    A snapshot that still shows the quote unconverted does not drop the entry.
    """

    def __init__(self):
        self._ids: Set[Any] = set()

    def __contains__(self, quote_id: Any) -> bool:
        return quote_id in self._ids

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def mark(self, quote_id: Any) -> None:
        self._ids.add(quote_id)

    def discard(self, quote_id: Any) -> None:
        self._ids.discard(quote_id)

    def clear(self) -> None:
        self._ids.clear()

    def invalidate(self, snapshot) -> List[Any]:
        """Drop entries the snapshot confirms or no longer knows about"""
        dropped = []
        for quote_id in list(self._ids):
            quote = snapshot.find_quote(quote_id)
            if quote is None or is_persisted_as_converted(quote):
                self._ids.discard(quote_id)
                dropped.append(quote_id)
        return dropped


class ConversionStateTracker:
    """Calcula is_already_converted para la UI y para el flujo de conversión"""

    def __init__(self, overlay: ConversionOverlay = None):
        self.overlay = overlay if overlay is not None else ConversionOverlay()

    def is_already_converted(self, quote: QuoteOut) -> bool:
        return is_persisted_as_converted(quote) or quote.id in self.overlay

    async def observe(self, snapshot) -> None:
        dropped = self.overlay.invalidate(snapshot)
        if dropped:
            logger.debug(f"Overlay entries settled by store snapshot: {dropped}")
