import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import Database
from errors import DuplicateRequestError, ProductNotFound
from models import Product, Settlement, SettlementState
from utils import to_money

logger = logging.getLogger(__name__)

# Reconciliation picks these up once they are old enough
PENDING_STATES = (SettlementState.CHECKING_FUNDS, SettlementState.UNRESOLVED)


class InventoryStore:
    """Products and the settlement intent log, both in the same local database."""

    def __init__(self, db: Database):
        self.db = db

    def transaction(self):
        return self.db.transaction()

    # ---- stock ----

    def get_product(self, session: Session, product_id: int) -> Product:
        product = session.get(Product, product_id)
        if not product:
            raise ProductNotFound(f"Product {product_id} not found")
        return product

    def try_decrement(self, session: Session, product_id: int, quantity: int) -> Optional[Decimal]:
        """
        Check-and-decrement in one statement. Returns the unit price the
        decrement was authorized against, or None when no row matched
        (stock went below `quantity` or the product vanished).
        """
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.available_stock >= quantity)
            .values(available_stock=Product.available_stock - quantity)
            .returning(Product.price)
            .execution_options(synchronize_session=False)
        )
        row = session.execute(stmt).first()
        if row is None:
            return None
        return to_money(row.price)

    def increment(self, session: Session, product_id: int, quantity: int) -> None:
        session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(available_stock=Product.available_stock + quantity)
            .execution_options(synchronize_session=False)
        )

    # ---- intent log ----

    def record_intent(
        self,
        session: Session,
        *,
        reference: str,
        customer_id: int,
        lines: List[dict],
        total_cost: Decimal,
        idempotency_key: Optional[str] = None,
    ) -> Settlement:
        settlement = Settlement(
            reference=reference,
            idempotency_key=idempotency_key,
            customer_id=customer_id,
            lines=lines,
            total_cost=total_cost,
            state=SettlementState.CHECKING_FUNDS,
        )
        session.add(settlement)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DuplicateRequestError(f"Idempotency key {idempotency_key!r} already used") from exc
        return settlement

    def set_state(
        self,
        session: Session,
        reference: str,
        state: SettlementState,
        from_states: Sequence[SettlementState],
        **fields,
    ) -> bool:
        """Move an intent to `state` only if it is still in one of `from_states`."""
        result = session.execute(
            update(Settlement)
            .where(Settlement.reference == reference, Settlement.state.in_(from_states))
            .values(state=state, updated_at=datetime.utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_by_key(self, idempotency_key: str) -> Optional[Settlement]:
        return self.db.read(lambda db: db.scalars(
            select(Settlement).where(Settlement.idempotency_key == idempotency_key)
        ).first())

    def get_settlement(self, reference: str) -> Optional[Settlement]:
        return self.db.read(lambda db: db.scalars(
            select(Settlement).where(Settlement.reference == reference)
        ).first())

    def pending_settlements(self, before: datetime) -> List[Settlement]:
        return self.db.read(lambda db: list(db.scalars(
            select(Settlement)
            .where(Settlement.state.in_(PENDING_STATES), Settlement.updated_at <= before)
            .order_by(Settlement.id.asc())
        )))

    # ---- directory passthroughs ----

    def list_products(self) -> List[Product]:
        return self.db.read(lambda db: list(db.scalars(select(Product).order_by(Product.name.asc()))))

    def add_product(self, name: str, description: str, price: Decimal, available_stock: int) -> Product:
        with self.transaction() as db:
            obj = Product(
                name=name,
                description=description,
                price=to_money(price),
                available_stock=available_stock,
            )
            db.add(obj)
            db.flush()
        logger.info("product added: id=%s name=%s stock=%s", obj.id, obj.name, obj.available_stock)
        return obj

    def seed(self, products: Iterable[dict]) -> None:
        with self.transaction() as db:
            if db.query(Product).count() == 0:
                db.add_all([Product(**p) for p in products])
