"""Payment gateway request and response schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PaymentLinkStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Product(BaseModel):
    """An active catalog item that can be paid for."""

    id: str
    name: str
    product_code: str
    amount_cents: int = Field(ge=0)
    currency: str = "USD"


class PaymentLinkRequest(BaseModel):
    """Parameters for minting or reusing a payment link."""

    product_id: str
    session_id: str
    tenant_id: str
    customer_name: str
    customer_email: str
    amount_cents: int
    currency: str


class PaymentLinkResult(BaseModel):
    token: str
    existing: bool = False


class PaymentLinkRecord(BaseModel):
    """A payment link as stored by the gateway, used for history listings."""

    token: str
    tenant_id: str
    session_id: str
    product_id: str
    product_name: str
    amount_cents: int
    currency: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    status: PaymentLinkStatus = PaymentLinkStatus.PENDING
    created_at: datetime


class TenantProfile(BaseModel):
    """Tenant domain settings used to build public link URLs."""

    id: str
    domain: Optional[str] = None
    subdomain: Optional[str] = None
    root_domain: Optional[str] = None
