import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import cast, func, or_, select, update, String
from sqlalchemy.exc import IntegrityError

from database import UNAVAILABLE_ERRORS, Database
from errors import (
    CustomerNotFound,
    OutcomeUnknownError,
    StoreUnavailableError,
    ValidationError,
)
from models import Customer, WalletMovement
from utils import normalize_email, to_money

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Customer wallets. Lives in its own database; nothing here ever joins a
    transaction of the Inventory Store.

    Balance changes are single conditional UPDATEs, each paired with a
    wallet_movements row committed in the same ledger transaction so that
    reconciliation can ask "was reference X applied?".
    """

    def __init__(self, db: Database):
        self.db = db

    def resolve_credential(self, qr_credential: str) -> int:
        customer_id = self.db.read(lambda db: db.scalar(
            select(Customer.id).where(Customer.qr_credential == qr_credential)
        ))
        if customer_id is None:
            raise CustomerNotFound(f"No customer for credential {qr_credential!r}")
        return customer_id

    def get_balance(self, customer_id: int) -> Decimal:
        # A zero balance is a real account; only a missing row is "not found".
        balance = self.db.read(lambda db: db.scalar(
            select(Customer.balance).where(Customer.id == customer_id)
        ))
        if balance is None:
            raise CustomerNotFound(f"Customer {customer_id} not found")
        return to_money(balance)

    def debit(self, customer_id: int, amount: Decimal, reference: str) -> Optional[Decimal]:
        """
        Take `amount` from the wallet only if the balance still covers it.

        Returns the new balance, or None if the conditional update matched no
        row. Raises StoreUnavailableError when the write certainly did not
        happen and OutcomeUnknownError when the commit could not be confirmed.
        """
        db = self.db.session()
        try:
            try:
                row = db.execute(
                    update(Customer)
                    .where(Customer.id == customer_id, Customer.balance >= amount)
                    .values(balance=Customer.balance - amount)
                    .returning(Customer.balance)
                    .execution_options(synchronize_session=False)
                ).first()
                if row is None:
                    db.rollback()
                    return None
                new_balance = to_money(row.balance)
                db.add(WalletMovement(
                    customer_id=customer_id,
                    reference=reference,
                    kind="purchase",
                    amount=-amount,
                    balance_after=new_balance,
                ))
                db.flush()
            except UNAVAILABLE_ERRORS as exc:
                db.rollback()
                raise StoreUnavailableError(f"ledger debit not applied: {exc}") from exc
            try:
                db.commit()
            except UNAVAILABLE_ERRORS as exc:
                raise OutcomeUnknownError(f"ledger debit for {reference} not confirmed: {exc}") from exc
            logger.info("debited customer=%s amount=%s ref=%s (balance=%s)", customer_id, amount, reference, new_balance)
            return new_balance
        finally:
            db.close()

    def credit(self, customer_id: int, amount: Decimal, reference: Optional[str] = None, kind: str = "topup") -> Decimal:
        """Atomic increment. A repeated non-null `reference` is applied once."""
        if reference is not None:
            previous = self.find_movement(reference)
            if previous is not None:
                return self._replay_credit(previous, customer_id, amount)
        try:
            with self.db.transaction() as db:
                row = db.execute(
                    update(Customer)
                    .where(Customer.id == customer_id)
                    .values(balance=Customer.balance + amount)
                    .returning(Customer.balance)
                    .execution_options(synchronize_session=False)
                ).first()
                if row is None:
                    raise CustomerNotFound(f"Customer {customer_id} not found")
                new_balance = to_money(row.balance)
                db.add(WalletMovement(
                    customer_id=customer_id,
                    reference=reference,
                    kind=kind,
                    amount=amount,
                    balance_after=new_balance,
                ))
        except IntegrityError:
            # lost a race with the same reference
            previous = self.find_movement(reference) if reference is not None else None
            if previous is None:
                raise
            return self._replay_credit(previous, customer_id, amount)
        logger.info("credited customer=%s amount=%s ref=%s (balance=%s)", customer_id, amount, reference, new_balance)
        return new_balance

    def _replay_credit(self, previous: WalletMovement, customer_id: int, amount: Decimal) -> Decimal:
        if previous.customer_id != customer_id or to_money(previous.amount) != to_money(amount):
            raise ValidationError(f"Reference {previous.reference!r} was already used for a different credit")
        logger.info("credit %s already applied, replaying balance=%s", previous.reference, previous.balance_after)
        return to_money(previous.balance_after)

    def find_movement(self, reference: str) -> Optional[WalletMovement]:
        return self.db.read(lambda db: db.scalars(
            select(WalletMovement).where(WalletMovement.reference == reference)
        ).first())

    # ---- directory passthroughs ----

    def list_customers(self) -> List[Customer]:
        return self.db.read(lambda db: list(db.scalars(select(Customer).order_by(Customer.name.asc()))))

    def search_customers(self, key: str) -> List[Customer]:
        pattern = f"%{key.strip().lower()}%"
        return self.db.read(lambda db: list(db.scalars(
            select(Customer)
            .where(or_(
                cast(Customer.id, String).like(pattern),
                func.lower(Customer.name).like(pattern),
            ))
            .order_by(Customer.name.asc())
        )))

    def register_customer(self, name: str, email: str, phone: str, qr_credential: str, balance: Decimal) -> Customer:
        try:
            with self.db.transaction() as db:
                obj = Customer(
                    name=name,
                    email=normalize_email(email),
                    phone=phone,
                    qr_credential=qr_credential,
                    balance=to_money(balance),
                )
                db.add(obj)
                db.flush()
        except IntegrityError as exc:
            raise ValidationError(f"QR credential {qr_credential!r} already registered") from exc
        logger.info("customer registered: id=%s name=%s", obj.id, obj.name)
        return obj

    def seed(self, customers: Iterable[dict]) -> None:
        with self.db.transaction() as db:
            if db.query(Customer).count() == 0:
                db.add_all([Customer(**c) for c in customers])
