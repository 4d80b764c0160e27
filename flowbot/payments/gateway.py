"""
Payment gateway contract and an in-memory implementation.

In production the gateway is a billing backend reached over HTTP. The
in-memory gateway keeps the same contract, so the orchestrator can be
exercised end to end in tests and in the console demo.
"""

import logging
import secrets
import string
from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol

from flowbot.config import settings
from flowbot.schemas.payment_schema import (
    PaymentLinkRecord,
    PaymentLinkRequest,
    PaymentLinkResult,
    PaymentLinkStatus,
    Product,
    TenantProfile,
)
from flowbot.utils import utc_now

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits

# Links in these states may be handed out again instead of minting a new one
REUSABLE_STATUSES = frozenset({PaymentLinkStatus.PENDING, PaymentLinkStatus.PROCESSING})


class PaymentGateway(Protocol):
    async def list_active_products(self, tenant_id: str) -> list[Product]: ...

    async def ensure_payment_link(self, request: PaymentLinkRequest) -> PaymentLinkResult: ...

    async def resolve_tenant_base_url(self, tenant_id: str) -> str: ...

    async def list_payment_links(
        self, tenant_id: str, offset: int, limit: int
    ) -> list[PaymentLinkRecord]: ...


def generate_token(length: Optional[int] = None) -> str:
    """Random alphanumeric link token."""
    size = length or settings.payments.token_length
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(size))


def build_link_route(token: str) -> str:
    return f"{settings.payments.link_route_prefix.rstrip('/')}/{token}"


def _with_scheme(host: str) -> str:
    host = host.strip().rstrip("/")
    if host.startswith(("http://", "https://")):
        return host
    return f"https://{host}"


class InMemoryPaymentGateway:
    """
    Catalog, tenant directory and link ledger held in process memory.

    ``ensure_payment_link`` is idempotent: a request matching a link that
    is still pending or processing returns that link with ``existing=True``.
    """

    def __init__(
        self,
        products: Optional[dict[str, Iterable[Product]]] = None,
        tenants: Optional[Iterable[TenantProfile]] = None,
        root_domain: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._products: dict[str, list[Product]] = {
            tenant_id: list(items) for tenant_id, items in (products or {}).items()
        }
        self._tenants: dict[str, TenantProfile] = {t.id: t for t in tenants or []}
        self._root_domain = root_domain or settings.payments.root_domain
        self._links: dict[str, PaymentLinkRecord] = {}
        self._clock = clock

    def add_product(self, tenant_id: str, product: Product) -> None:
        self._products.setdefault(tenant_id, []).append(product)

    def set_status(self, token: str, status: PaymentLinkStatus) -> None:
        self._links[token] = self._links[token].model_copy(update={"status": status})

    @property
    def links(self) -> list[PaymentLinkRecord]:
        return list(self._links.values())

    async def list_active_products(self, tenant_id: str) -> list[Product]:
        return list(self._products.get(tenant_id, []))

    async def ensure_payment_link(self, request: PaymentLinkRequest) -> PaymentLinkResult:
        if not request.tenant_id:
            raise ValueError("tenant_id is required to issue a payment link")

        product = self._find_product(request.tenant_id, request.product_id)
        if product is None:
            raise LookupError(f"Product '{request.product_id}' is not active for this tenant")

        email = request.customer_email.strip().lower()
        for record in self._links.values():
            if (
                record.status in REUSABLE_STATUSES
                and record.tenant_id == request.tenant_id
                and record.session_id == request.session_id
                and record.product_id == request.product_id
                and (record.customer_email or "") == email
                and record.amount_cents == request.amount_cents
                and record.currency == request.currency
            ):
                logger.info("Reusing payment link %s", record.token)
                return PaymentLinkResult(token=record.token, existing=True)

        token = generate_token()
        self._links[token] = PaymentLinkRecord(
            token=token,
            tenant_id=request.tenant_id,
            session_id=request.session_id,
            product_id=request.product_id,
            product_name=product.name,
            amount_cents=request.amount_cents,
            currency=request.currency,
            customer_name=request.customer_name,
            customer_email=email,
            created_at=self._clock(),
        )
        logger.info("Issued payment link %s for product %s", token, request.product_id)
        return PaymentLinkResult(token=token, existing=False)

    async def resolve_tenant_base_url(self, tenant_id: str) -> str:
        """Tenant domain, then subdomain under a root domain, then the default root."""
        if not tenant_id:
            raise ValueError("tenant_id is required to resolve a base URL")

        tenant = self._tenants.get(tenant_id)
        if tenant is not None:
            if tenant.domain:
                return _with_scheme(tenant.domain)
            if tenant.subdomain:
                root = tenant.root_domain or self._root_domain
                return _with_scheme(f"{tenant.subdomain}.{root}")
        return _with_scheme(self._root_domain)

    async def list_payment_links(
        self, tenant_id: str, offset: int, limit: int
    ) -> list[PaymentLinkRecord]:
        """Newest first."""
        records = sorted(
            (r for r in self._links.values() if r.tenant_id == tenant_id),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return records[offset:offset + limit]

    def _find_product(self, tenant_id: str, product_id: str) -> Optional[Product]:
        for product in self._products.get(tenant_id, []):
            if product.id == product_id:
                return product
        return None
