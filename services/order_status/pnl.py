from typing import Optional

from services.brokers.models import TransactionType


def realized_pnl(side: str, executed_price: Optional[float], quantity: Optional[int]) -> float:
    """Cash-flow P&L of one fill: buying spends, selling receives."""
    if not executed_price or not quantity:
        return 0.0
    value = float(executed_price) * int(quantity)
    if str(side).upper() == TransactionType.BUY.value:
        value = -value
    return round(value, 2)
