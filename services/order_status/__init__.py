from .pnl import realized_pnl
from .reconciler import OrderStatusReconciler

__all__ = ["OrderStatusReconciler", "realized_pnl"]
