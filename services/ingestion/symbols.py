"""Instrument id lookup for brokers that do not accept plain trading symbols."""

from typing import Dict, Mapping, Optional, Protocol, Tuple


class SymbolResolver(Protocol):
    async def resolve(self, symbol: str, exchange: str, broker: str) -> Optional[str]:
        """Broker instrument id for ``symbol`` on ``exchange``, or None when unknown."""
        ...


class StaticSymbolResolver:
    """In-memory table keyed by (broker, exchange, symbol)."""

    def __init__(self, table: Optional[Mapping[Tuple[str, str, str], str]] = None):
        self._table: Dict[Tuple[str, str, str], str] = {
            (b.lower(), e.upper(), s.upper()): str(token) for (b, e, s), token in (table or {}).items()
        }

    def register(self, broker: str, exchange: str, symbol: str, token: str) -> None:
        self._table[(broker.lower(), exchange.upper(), symbol.upper())] = str(token)

    async def resolve(self, symbol: str, exchange: str, broker: str) -> Optional[str]:
        return self._table.get((broker.lower(), (exchange or "NSE").upper(), symbol.upper()))
