# Pydantic schemas
# Request/response field names are the kiosk clients' wire contract.

from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from models import MAX_ID


class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: Decimal = Field(ge=0)
    available_stock: int = Field(ge=0)


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = ""
    price: Decimal
    available_stock: int


class CustomerCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str = ""
    phone: str = ""
    qr_credential: str = Field(min_length=1)
    balance: Decimal = Field(default=Decimal("0"), ge=0)


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: Optional[str] = ""
    phone: Optional[str] = ""
    qr_credential: str
    balance: Decimal


class PurchaseItemIn(BaseModel):
    product_id: int = Field(gt=0, le=MAX_ID)
    cantidad: int = Field(gt=0)


class PurchaseRequest(BaseModel):
    items: List[PurchaseItemIn] = Field(min_length=1)
    # QR credential scanned from the customer's code
    cliente_id: str = Field(min_length=1)
    idempotency_key: Optional[str] = None


class PurchaseItemOut(BaseModel):
    product_id: int
    cantidad: int
    precio_unitario: Decimal


class PurchaseResponse(BaseModel):
    total_costo: Decimal
    nuevo_balance: Decimal
    items: List[PurchaseItemOut]
    referencia: str


class TopUpRequest(BaseModel):
    cliente_id: int = Field(gt=0, le=MAX_ID)
    cantidad: Decimal
    idempotency_key: Optional[str] = None


class TopUpResponse(BaseModel):
    nuevo_balance: Decimal


class ErrorResponse(BaseModel):
    message: str
    error: str


class ReconcileResponse(BaseModel):
    completed: List[str]
    aborted: List[str]
    failed: List[str]
