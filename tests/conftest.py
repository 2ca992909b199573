"""Pytest fixtures: both stores on throwaway SQLite files, seeded per test."""

from dataclasses import dataclass
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app import create_app
from config import Settings
from database import Database
from inventory import InventoryStore
from ledger import LedgerStore
from models import InventoryBase, LedgerBase, Product, Settlement
from settlement import SettlementCoordinator
from topup import TopUpService


@dataclass
class Seed:
    # products
    p10: int      # price 10, stock 5
    p5: int       # price 5, stock 10
    last: int     # price 7, stock 1
    # customers
    rich: int     # balance 1000
    poor: int     # balance 20
    zero: int     # balance 0


def seed_stores(inventory: InventoryStore, ledger: LedgerStore) -> Seed:
    return Seed(
        p10=inventory.add_product("Ten", "price 10", Decimal("10.00"), 5).id,
        p5=inventory.add_product("Five", "price 5", Decimal("5.00"), 10).id,
        last=inventory.add_product("Last", "one left", Decimal("7.00"), 1).id,
        rich=ledger.register_customer("Rich", "Rich@Example.com", "555-0001", "QR-RICH", Decimal("1000.00")).id,
        poor=ledger.register_customer("Poor", "poor@example.com", "555-0002", "QR-POOR", Decimal("20.00")).id,
        zero=ledger.register_customer("Zero", "zero@example.com", "555-0003", "QR-ZERO", Decimal("0")).id,
    )


@pytest.fixture
def inventory_db(tmp_path):
    with Database("inventory", f"sqlite:///{tmp_path / 'inventory.db'}", InventoryBase.metadata) as db:
        yield db


@pytest.fixture
def ledger_db(tmp_path):
    with Database("ledger", f"sqlite:///{tmp_path / 'ledger.db'}", LedgerBase.metadata) as db:
        yield db


@pytest.fixture
def inventory(inventory_db) -> InventoryStore:
    return InventoryStore(inventory_db)


@pytest.fixture
def ledger(ledger_db) -> LedgerStore:
    return LedgerStore(ledger_db)


@pytest.fixture
def seed(inventory, ledger) -> Seed:
    return seed_stores(inventory, ledger)


@pytest.fixture
def coordinator(inventory, ledger) -> SettlementCoordinator:
    return SettlementCoordinator(inventory, ledger)


@pytest.fixture
def topups(ledger) -> TopUpService:
    return TopUpService(ledger)


@pytest.fixture
def stock(inventory):
    def _stock(product_id: int) -> int:
        return inventory.db.read(lambda db: db.get(Product, product_id).available_stock)
    return _stock


@pytest.fixture
def settlements(inventory):
    def _settlements():
        return inventory.db.read(lambda db: db.query(Settlement).order_by(Settlement.id).all())
    return _settlements


@pytest.fixture
def client(tmp_path):
    settings = Settings(
        inventory_url=f"sqlite:///{tmp_path / 'api-inventory.db'}",
        ledger_url=f"sqlite:///{tmp_path / 'api-ledger.db'}",
        seed_demo_data=False,
    )
    app = create_app(settings)
    with TestClient(app) as c:
        c.seed = seed_stores(app.state.inventory, app.state.ledger)
        yield c
