import logging
from decimal import Decimal
from typing import Optional

from errors import ValidationError
from ledger import LedgerStore
from models import MAX_ID
from utils import to_money

logger = logging.getLogger(__name__)


class TopUpService:
    """
    Wallet recharge: one atomic increment on the Ledger Store.

    Without an idempotency key every call is applied again. With one, the
    first application wins and repeats return the balance it produced.
    """

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    def top_up(self, customer_id: int, amount, idempotency_key: Optional[str] = None) -> Decimal:
        if isinstance(customer_id, bool) or not isinstance(customer_id, int) or not 0 < customer_id <= MAX_ID:
            raise ValidationError(f"Invalid customer id: {customer_id!r}")
        try:
            amount = to_money(amount)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if amount <= 0:
            raise ValidationError(f"Top-up amount must be > 0, got {amount}")

        reference = f"topup:{idempotency_key}" if idempotency_key else None
        new_balance = self.ledger.credit(customer_id, amount, reference=reference)
        logger.info("top-up customer=%s amount=%s key=%s (balance=%s)", customer_id, amount, idempotency_key, new_balance)
        return new_balance
