import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import declarative_base, relationship

# The two stores share no transaction, so they share no metadata either.
InventoryBase = declarative_base()
LedgerBase = declarative_base()

Money = Numeric(12, 2, asdecimal=True)

# Largest key a signed 64-bit INTEGER column can hold
MAX_ID = 2**63 - 1


class SettlementState(str, enum.Enum):
    VALIDATING = "validating"
    RESERVING = "reserving"
    CHECKING_FUNDS = "checking_funds"
    COMMITTING = "committing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    # ledger outcome unknown; waits for reconciliation
    UNRESOLVED = "unresolved"


# ---- Inventory Store ----

class Product(InventoryBase):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("available_stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, default="")
    price = Column(Money, nullable=False)
    available_stock = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Product {self.id} {self.name}>"


class Settlement(InventoryBase):
    """Saga intent: written together with the stock decrements it covers."""

    __tablename__ = "settlements"
    id = Column(Integer, primary_key=True)
    reference = Column(String(32), unique=True, nullable=False, index=True)
    idempotency_key = Column(String, unique=True, nullable=True)
    customer_id = Column(Integer, nullable=False)
    lines = Column(JSON, nullable=False)
    total_cost = Column(Money, nullable=False)
    new_balance = Column(Money, nullable=True)
    state = Column(Enum(SettlementState, native_enum=False, length=20), nullable=False)
    error = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


# ---- Ledger Store ----

class Customer(LedgerBase):
    __tablename__ = "customers"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_customers_balance_non_negative"),
    )
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, index=True, default="")
    phone = Column(String, default="")
    qr_credential = Column(String, unique=True, index=True, nullable=False)
    balance = Column(Money, nullable=False, default=0)
    movements = relationship("WalletMovement", back_populates="customer", cascade="all,delete-orphan")

    def __repr__(self):
        return f"<Customer {self.id} {self.name}>"


class WalletMovement(LedgerBase):
    __tablename__ = "wallet_movements"
    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    # settlement reference or "topup:<key>"; NULL for un-keyed top-ups
    reference = Column(String, unique=True, nullable=True)
    kind = Column(String(16), nullable=False)
    amount = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    customer = relationship("Customer", back_populates="movements")
