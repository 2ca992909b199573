import logging
from contextlib import ExitStack, asynccontextmanager
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import errors
from config import Settings, configure_logging
from database import Database
from inventory import InventoryStore
from ledger import LedgerStore
from models import InventoryBase, LedgerBase
from schemas import (
    CustomerCreate,
    CustomerOut,
    ErrorResponse,
    ProductCreate,
    ProductOut,
    PurchaseItemOut,
    PurchaseRequest,
    PurchaseResponse,
    ReconcileResponse,
    TopUpRequest,
    TopUpResponse,
)
from settlement import PurchaseLine, SettlementCoordinator
from topup import TopUpService
from utils import normalize_credential

logger = logging.getLogger(__name__)

DEMO_PRODUCTS = [
    dict(name="Agua",     description="Botella 600ml",  price=Decimal("10.00"), available_stock=100),
    dict(name="Galletas", description="Paquete 120g",   price=Decimal("15.50"), available_stock=50),
    dict(name="Cafe",     description="Vaso 12oz",      price=Decimal("25.00"), available_stock=30),
]
DEMO_CUSTOMERS = [
    dict(name="Cliente Demo", email="demo@example.com", phone="", qr_credential="QR-DEMO-0001", balance=Decimal("100.00")),
]

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    402: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        with ExitStack() as stores:
            inventory_db = stores.enter_context(
                Database("inventory", settings.inventory_url, InventoryBase.metadata, settings.store_timeout)
            )
            ledger_db = stores.enter_context(
                Database("ledger", settings.ledger_url, LedgerBase.metadata, settings.store_timeout)
            )
            inventory = InventoryStore(inventory_db)
            ledger = LedgerStore(ledger_db)
            if settings.seed_demo_data:
                inventory.seed(DEMO_PRODUCTS)
                ledger.seed(DEMO_CUSTOMERS)

            app.state.inventory = inventory
            app.state.ledger = ledger
            app.state.coordinator = SettlementCoordinator(inventory, ledger)
            app.state.topups = TopUpService(ledger)
            yield

    app = FastAPI(title="Monedero Kiosk", lifespan=lifespan)
    app.state.settings = settings

    @app.exception_handler(errors.KioskError)
    async def kiosk_error_handler(request: Request, exc: errors.KioskError):
        if isinstance(exc, errors.PartialFailureError):
            logger.error("partial failure on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'] if p != 'body')}: {e['msg']}" for e in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": problems or "Invalid request", "error": errors.ValidationError.kind},
        )

    _register_routes(app)
    return app


def get_coordinator(request: Request) -> SettlementCoordinator:
    return request.app.state.coordinator


def get_topups(request: Request) -> TopUpService:
    return request.app.state.topups


def get_inventory(request: Request) -> InventoryStore:
    return request.app.state.inventory


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def _register_routes(app: FastAPI) -> None:

    # -------------------------------
    # Settlement
    # -------------------------------

    @app.post("/purchase", response_model=PurchaseResponse, responses=ERROR_RESPONSES)
    def purchase(
        body: PurchaseRequest,
        coordinator: SettlementCoordinator = Depends(get_coordinator),
        ledger: LedgerStore = Depends(get_ledger),
    ):
        credential = normalize_credential(body.cliente_id)
        if not credential:
            raise errors.ValidationError("cliente_id is required")
        # credential -> stable id at the edge; the coordinator only sees ids
        customer_id = ledger.resolve_credential(credential)

        result = coordinator.settle_purchase(
            [PurchaseLine(product_id=i.product_id, quantity=i.cantidad) for i in body.items],
            customer_id,
            idempotency_key=body.idempotency_key,
        )
        return PurchaseResponse(
            total_costo=result.total_cost,
            nuevo_balance=result.new_balance,
            items=[
                PurchaseItemOut(product_id=l.product_id, cantidad=l.quantity, precio_unitario=l.unit_price)
                for l in result.lines
            ],
            referencia=result.reference,
        )

    @app.post("/topup", response_model=TopUpResponse, responses=ERROR_RESPONSES)
    def topup(body: TopUpRequest, topups: TopUpService = Depends(get_topups)):
        new_balance = topups.top_up(body.cliente_id, body.cantidad, idempotency_key=body.idempotency_key)
        return TopUpResponse(nuevo_balance=new_balance)

    @app.post("/admin/reconcile", response_model=ReconcileResponse)
    def reconcile(
        request: Request,
        older_than_seconds: Optional[int] = Query(default=None, ge=0),
        coordinator: SettlementCoordinator = Depends(get_coordinator),
    ):
        if older_than_seconds is None:
            older_than_seconds = request.app.state.settings.reconcile_after_seconds
        report = coordinator.reconcile(timedelta(seconds=older_than_seconds))
        return ReconcileResponse(completed=report.completed, aborted=report.aborted, failed=report.failed)

    # -------------------------------
    # Directory passthroughs
    # -------------------------------

    @app.get("/products", response_model=List[ProductOut])
    def list_products(inventory: InventoryStore = Depends(get_inventory)):
        return inventory.list_products()

    @app.post("/products", response_model=ProductOut, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
    def add_product(body: ProductCreate, inventory: InventoryStore = Depends(get_inventory)):
        name = body.name.strip()
        if not name:
            raise errors.ValidationError("name is required")
        return inventory.add_product(name, body.description.strip(), body.price, body.available_stock)

    @app.get("/customers", response_model=List[CustomerOut])
    def list_customers(ledger: LedgerStore = Depends(get_ledger)):
        return ledger.list_customers()

    @app.get("/customers/search/{key}", response_model=List[CustomerOut])
    def search_customers(key: str, ledger: LedgerStore = Depends(get_ledger)):
        return ledger.search_customers(key)

    @app.post("/customers", response_model=CustomerOut, status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
    def register_customer(body: CustomerCreate, ledger: LedgerStore = Depends(get_ledger)):
        name = body.name.strip()
        credential = normalize_credential(body.qr_credential)
        if not name or not credential:
            raise errors.ValidationError("name and qr_credential are required")
        return ledger.register_customer(name, body.email, body.phone.strip(), credential, body.balance)


app = create_app()

############# Application Run Command #############
# uvicorn app:app --reload --host 0.0.0.0 --port 8000
