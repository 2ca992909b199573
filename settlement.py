from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from errors import (
    DuplicateRequestError,
    InsufficientFunds,
    InsufficientStock,
    KioskError,
    OutcomeUnknownError,
    PartialFailureError,
    StoreUnavailableError,
    ValidationError,
)
from inventory import PENDING_STATES, InventoryStore
from ledger import LedgerStore
from models import MAX_ID, Settlement, SettlementState
from utils import CENTS, to_money

logger = logging.getLogger(__name__)

S = SettlementState

TRANSITIONS: Dict[SettlementState, set] = {
    S.VALIDATING: {S.RESERVING, S.ABORTED},
    S.RESERVING: {S.CHECKING_FUNDS, S.ABORTED},
    S.CHECKING_FUNDS: {S.COMMITTING, S.UNRESOLVED, S.ABORTED},
    S.COMMITTING: {S.COMPLETED, S.ABORTED},
    S.UNRESOLVED: {S.COMPLETED, S.ABORTED},
    S.COMPLETED: set(),
    S.ABORTED: set(),
}


@dataclass(slots=True)
class PurchaseLine:
    product_id: int
    quantity: int


@dataclass(slots=True)
class PricedLine:
    product_id: int
    quantity: int
    unit_price: Decimal

    def as_dict(self) -> dict:
        return {"product_id": self.product_id, "quantity": self.quantity, "unit_price": str(self.unit_price)}

    @classmethod
    def from_dict(cls, data: dict) -> "PricedLine":
        return cls(product_id=data["product_id"], quantity=data["quantity"], unit_price=to_money(data["unit_price"]))


@dataclass(slots=True)
class PurchaseResult:
    reference: str
    total_cost: Decimal
    new_balance: Decimal
    lines: List[PricedLine]


@dataclass(slots=True)
class ReconcileReport:
    completed: List[str] = field(default_factory=list)
    aborted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class SettlementFlow:
    """In-memory state machine of one settlement, keyed by its reference."""

    def __init__(self, reference: str):
        self.reference = reference
        self.state = S.VALIDATING

    def advance(self, new_state: SettlementState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal settlement transition {self.state.value} -> {new_state.value}")
        logger.info("[settlement=%s] %s -> %s", self.reference, self.state.value, new_state.value)
        self.state = new_state

    def abort(self, reason: KioskError) -> None:
        if self.state in (S.COMPLETED, S.ABORTED):
            return
        logger.info("[settlement=%s] %s -> aborted (%s: %s)", self.reference, self.state.value, reason.kind, reason.message)
        self.state = S.ABORTED


class SettlementCoordinator:
    """
    Settles a multi-line purchase across the Inventory Store and the Ledger
    Store, which share no transaction.

    Saga:
      1. one local inventory transaction: conditional stock decrements plus the
         intent row (state checking_funds), committed together;
      2. conditional ledger debit, tagged with the settlement reference;
      3. intent -> completed.
    If the ledger rejects the debit (or certainly did not apply it) the stock is
    re-incremented and the intent aborted. If the ledger cannot confirm its
    commit the intent is left unresolved for `reconcile` and the caller gets a
    PartialFailureError.
    """

    def __init__(self, inventory: InventoryStore, ledger: LedgerStore):
        self.inventory = inventory
        self.ledger = ledger

    def settle_purchase(
        self,
        lines: Sequence[PurchaseLine],
        customer_id: int,
        idempotency_key: Optional[str] = None,
    ) -> PurchaseResult:
        lines = self._validate(lines, customer_id)

        if idempotency_key:
            replay = self._replay(idempotency_key, customer_id, lines)
            if replay is not None:
                return replay

        flow = SettlementFlow(uuid.uuid4().hex)
        logger.info(
            "[settlement=%s] START customer=%s lines=%s key=%s",
            flow.reference, customer_id, [(l.product_id, l.quantity) for l in lines], idempotency_key,
        )

        priced, total = self._reserve(flow, lines, customer_id, idempotency_key)
        new_balance = self._charge(flow, customer_id, total, priced)
        self._finish(flow, customer_id, total, new_balance)

        logger.info("[settlement=%s] OK total=%s balance=%s", flow.reference, total, new_balance)
        return PurchaseResult(reference=flow.reference, total_cost=total, new_balance=new_balance, lines=priced)

    def _validate(self, lines: Sequence[PurchaseLine], customer_id: int) -> List[PurchaseLine]:
        if not lines:
            raise ValidationError("Purchase must contain at least one item")
        if not _is_id(customer_id):
            raise ValidationError(f"Invalid customer id {customer_id!r}")
        for i, line in enumerate(lines, start=1):
            if not _is_id(line.product_id):
                raise ValidationError(f"Invalid product id at item {i}: {line.product_id!r}")
            qty = line.quantity
            if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
                raise ValidationError(f"Invalid quantity at item {i}: {qty!r}")
        return list(lines)

    def _replay(self, idempotency_key: str, customer_id: int, lines: List[PurchaseLine]) -> Optional[PurchaseResult]:
        # aborted settlements release their key, so only live or completed ones are found
        settlement = self.inventory.find_by_key(idempotency_key)
        if settlement is None:
            return None
        if settlement.customer_id != customer_id:
            raise ValidationError(f"Idempotency key {idempotency_key!r} belongs to another customer")
        recorded = [(d["product_id"], d["quantity"]) for d in settlement.lines]
        if recorded != [(l.product_id, l.quantity) for l in lines]:
            raise ValidationError(f"Idempotency key {idempotency_key!r} was used for different items")
        if settlement.state != S.COMPLETED:
            raise DuplicateRequestError(
                f"Purchase with key {idempotency_key!r} is {settlement.state.value}, not replayable"
            )
        logger.info("[settlement=%s] replayed for key=%s", settlement.reference, idempotency_key)
        return _result_from_record(settlement)

    def _reserve(self, flow, lines, customer_id, idempotency_key):
        try:
            with self.inventory.transaction() as session:
                for line in lines:
                    product = self.inventory.get_product(session, line.product_id)
                    if line.quantity > product.available_stock:
                        raise InsufficientStock(
                            f"Insufficient stock for product {line.product_id}: "
                            f"have={product.available_stock}, need={line.quantity}"
                        )

                flow.advance(S.RESERVING)
                priced: List[PricedLine] = []
                for line in lines:
                    # zero rows means another purchase got there first
                    price = self.inventory.try_decrement(session, line.product_id, line.quantity)
                    if price is None:
                        raise InsufficientStock(f"Insufficient stock for product {line.product_id}: need={line.quantity}")
                    priced.append(PricedLine(line.product_id, line.quantity, price))

                total = sum((l.unit_price * l.quantity for l in priced), Decimal("0")).quantize(CENTS)
                self.inventory.record_intent(
                    session,
                    reference=flow.reference,
                    customer_id=customer_id,
                    lines=[l.as_dict() for l in priced],
                    total_cost=total,
                    idempotency_key=idempotency_key,
                )
        except KioskError as exc:
            flow.abort(exc)
            raise
        flow.advance(S.CHECKING_FUNDS)
        return priced, total

    def _charge(self, flow, customer_id, total, priced) -> Decimal:
        try:
            balance = self.ledger.get_balance(customer_id)
            if balance < total:
                raise InsufficientFunds(f"Insufficient balance for customer {customer_id}: have={balance}, need={total}")
            new_balance = self.ledger.debit(customer_id, total, flow.reference)
            if new_balance is None:
                raise InsufficientFunds(f"Insufficient balance for customer {customer_id}: need={total}")
        except OutcomeUnknownError as exc:
            self._mark_unresolved(flow, exc)
            raise PartialFailureError(
                f"Stock reserved but wallet debit unconfirmed for settlement {flow.reference}", flow.reference
            ) from exc
        except KioskError as exc:
            self._compensate(flow, priced, exc)
            raise
        except Exception as exc:
            logger.exception("[settlement=%s] unexpected ledger failure", flow.reference)
            self._mark_unresolved(flow, exc)
            raise PartialFailureError(
                f"Stock reserved but wallet debit failed unexpectedly for settlement {flow.reference}", flow.reference
            ) from exc
        flow.advance(S.COMMITTING)
        return new_balance

    def _compensate(self, flow: SettlementFlow, priced: List[PricedLine], cause: KioskError) -> None:
        logger.warning("[settlement=%s] COMPENSATE stock after %s: %s", flow.reference, cause.kind, cause.message)
        try:
            with self.inventory.transaction() as session:
                if self.inventory.set_state(
                    session, flow.reference, S.ABORTED,
                    from_states=(S.CHECKING_FUNDS,), error=f"{cause.kind}: {cause.message}",
                    idempotency_key=None,
                ):
                    for line in reversed(priced):
                        self.inventory.increment(session, line.product_id, line.quantity)
        except StoreUnavailableError as comp_exc:
            logger.error("[settlement=%s] COMPENSATION FAILED: %s", flow.reference, comp_exc)
            raise PartialFailureError(
                f"Settlement {flow.reference} failed ({cause.kind}) and stock could not be restored",
                flow.reference,
            ) from comp_exc
        flow.abort(cause)

    def _mark_unresolved(self, flow: SettlementFlow, cause: Exception) -> None:
        logger.error("[settlement=%s] ledger outcome unknown: %s", flow.reference, cause)
        try:
            with self.inventory.transaction() as session:
                self.inventory.set_state(
                    session, flow.reference, S.UNRESOLVED,
                    from_states=(S.CHECKING_FUNDS,), error=str(cause),
                )
        except StoreUnavailableError:
            # still checking_funds on disk, which reconcile also picks up
            logger.exception("[settlement=%s] could not mark unresolved", flow.reference)
        flow.advance(S.UNRESOLVED)

    def _finish(self, flow: SettlementFlow, customer_id: int, total: Decimal, new_balance: Decimal) -> None:
        try:
            with self.inventory.transaction() as session:
                marked = self.inventory.set_state(
                    session, flow.reference, S.COMPLETED,
                    from_states=(S.CHECKING_FUNDS,), new_balance=new_balance,
                )
        except StoreUnavailableError:
            # both stores are already applied; reconcile finds the movement and closes it
            logger.exception("[settlement=%s] charged but not marked completed", flow.reference)
            marked = True
        if not marked:
            self._refund_late_debit(flow, customer_id, total)
        flow.advance(S.COMPLETED)

    def _refund_late_debit(self, flow: SettlementFlow, customer_id: int, total: Decimal) -> None:
        """
        The intent left checking_funds while the debit was in flight: reconcile
        saw no movement yet, gave the stock back and aborted it. Undo the
        debit so neither store keeps its half.
        """
        ref = flow.reference
        logger.error("[settlement=%s] debit landed after the settlement was aborted, refunding %s", ref, total)
        try:
            self.ledger.credit(customer_id, total, reference=f"refund:{ref}", kind="refund")
        except KioskError as exc:
            logger.error("[settlement=%s] REFUND FAILED: %s", ref, exc)
            raise PartialFailureError(
                f"Settlement {ref} was aborted after the wallet was charged and the refund failed", ref
            ) from exc
        cause = StoreUnavailableError(
            f"Wallet debit for settlement {ref} was too slow and the purchase was aborted; amount refunded"
        )
        flow.abort(cause)
        raise cause

    def reconcile(self, older_than: timedelta = timedelta(seconds=60)) -> ReconcileReport:
        """
        Close settlements stuck between the stock commit and the ledger debit.

        The ledger is the authority: a wallet movement carrying the settlement
        reference means the debit happened, so the settlement completes;
        no movement means it never will, so the stock is given back.
        """
        cutoff = datetime.utcnow() - older_than
        report = ReconcileReport()
        for settlement in self.inventory.pending_settlements(cutoff):
            ref = settlement.reference
            try:
                movement = self.ledger.find_movement(ref)
                with self.inventory.transaction() as session:
                    if movement is not None:
                        if self.inventory.set_state(
                            session, ref, S.COMPLETED, from_states=PENDING_STATES,
                            new_balance=to_money(movement.balance_after), error=None,
                        ):
                            report.completed.append(ref)
                    elif self.inventory.set_state(
                        session, ref, S.ABORTED, from_states=PENDING_STATES,
                        error="reconciled: wallet debit never applied", idempotency_key=None,
                    ):
                        for line in reversed([PricedLine.from_dict(d) for d in settlement.lines]):
                            self.inventory.increment(session, line.product_id, line.quantity)
                        report.aborted.append(ref)
            except StoreUnavailableError as exc:
                logger.error("[settlement=%s] reconcile failed: %s", ref, exc)
                report.failed.append(ref)
                continue
            logger.info("[settlement=%s] reconciled from %s", ref, settlement.state.value)
        return report


def _result_from_record(settlement: Settlement) -> PurchaseResult:
    return PurchaseResult(
        reference=settlement.reference,
        total_cost=to_money(settlement.total_cost),
        new_balance=to_money(settlement.new_balance),
        lines=[PricedLine.from_dict(d) for d in settlement.lines],
    )


def _is_id(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_ID
