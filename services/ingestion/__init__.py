from .models import DebugTrail, WebhookResult, WebhookSignal, parse_signal
from .pipeline import OrderIngestionPipeline
from .symbols import StaticSymbolResolver, SymbolResolver

__all__ = [
    "DebugTrail",
    "OrderIngestionPipeline",
    "StaticSymbolResolver",
    "SymbolResolver",
    "WebhookResult",
    "WebhookSignal",
    "parse_signal",
]
