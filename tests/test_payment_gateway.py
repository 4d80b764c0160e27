"""Tests for the in-memory payment gateway."""

import pytest

from flowbot.payments.gateway import (
    InMemoryPaymentGateway,
    build_link_route,
    generate_token,
)
from flowbot.schemas.payment_schema import PaymentLinkRequest, PaymentLinkStatus, TenantProfile
from tests.conftest import SESSION, TENANT, make_product


def make_request(**overrides) -> PaymentLinkRequest:
    values = {
        "product_id": "prod-1",
        "session_id": SESSION,
        "tenant_id": TENANT,
        "customer_name": "Ana Lopez",
        "customer_email": "ana@example.com",
        "amount_cents": 9900,
        "currency": "USD",
    }
    values.update(overrides)
    return PaymentLinkRequest(**values)


class TestTokens:
    def test_token_length_and_alphabet(self):
        token = generate_token(24)
        assert len(token) == 24
        assert token.isalnum()

    def test_tokens_differ(self):
        assert generate_token(24) != generate_token(24)

    def test_route(self):
        assert build_link_route("abc") == "/pay/abc"


class TestEnsurePaymentLink:
    @pytest.mark.asyncio
    async def test_issues_new_link(self, gateway):
        result = await gateway.ensure_payment_link(make_request())
        assert result.existing is False
        assert gateway.links[0].token == result.token
        assert gateway.links[0].status == PaymentLinkStatus.PENDING

    @pytest.mark.asyncio
    async def test_same_request_reuses_link(self, gateway):
        first = await gateway.ensure_payment_link(make_request())
        second = await gateway.ensure_payment_link(make_request(customer_email="ANA@example.com "))
        assert second.existing is True
        assert second.token == first.token
        assert len(gateway.links) == 1

    @pytest.mark.asyncio
    async def test_different_email_gets_new_link(self, gateway):
        first = await gateway.ensure_payment_link(make_request())
        second = await gateway.ensure_payment_link(make_request(customer_email="bo@example.com"))
        assert second.token != first.token

    @pytest.mark.asyncio
    async def test_completed_link_not_reused(self, gateway):
        first = await gateway.ensure_payment_link(make_request())
        gateway.set_status(first.token, PaymentLinkStatus.COMPLETED)
        second = await gateway.ensure_payment_link(make_request())
        assert second.existing is False

    @pytest.mark.asyncio
    async def test_unknown_product(self, gateway):
        with pytest.raises(LookupError):
            await gateway.ensure_payment_link(make_request(product_id="nope"))

    @pytest.mark.asyncio
    async def test_tenant_required(self, gateway):
        with pytest.raises(ValueError):
            await gateway.ensure_payment_link(make_request(tenant_id=""))


class TestTenantBaseUrl:
    @pytest.mark.asyncio
    async def test_custom_domain(self):
        gateway = InMemoryPaymentGateway(tenants=[TenantProfile(id=TENANT, domain="pay.acme.com")])
        assert await gateway.resolve_tenant_base_url(TENANT) == "https://pay.acme.com"

    @pytest.mark.asyncio
    async def test_domain_with_scheme_kept(self):
        gateway = InMemoryPaymentGateway(tenants=[TenantProfile(id=TENANT, domain="http://localhost:3000/")])
        assert await gateway.resolve_tenant_base_url(TENANT) == "http://localhost:3000"

    @pytest.mark.asyncio
    async def test_subdomain_under_root(self):
        gateway = InMemoryPaymentGateway(
            tenants=[TenantProfile(id=TENANT, subdomain="acme")], root_domain="flowcast.chat"
        )
        assert await gateway.resolve_tenant_base_url(TENANT) == "https://acme.flowcast.chat"

    @pytest.mark.asyncio
    async def test_unknown_tenant_uses_root(self):
        gateway = InMemoryPaymentGateway(root_domain="flowcast.chat")
        assert await gateway.resolve_tenant_base_url("someone") == "https://flowcast.chat"

    @pytest.mark.asyncio
    async def test_empty_tenant_rejected(self):
        with pytest.raises(ValueError):
            await InMemoryPaymentGateway().resolve_tenant_base_url("")


class TestPaymentHistory:
    @pytest.mark.asyncio
    async def test_newest_first_and_paged(self, gateway, clock):
        gateway.add_product(TENANT, make_product("prod-2", "Strategy Consultation", "CON-60", 15000))
        tokens = []
        for product_id, amount in (("prod-1", 9900), ("prod-2", 15000), ("prod-1", 9900)):
            clock.advance(minutes=1)
            result = await gateway.ensure_payment_link(
                make_request(product_id=product_id, amount_cents=amount, session_id=f"s-{len(tokens)}")
            )
            tokens.append(result.token)

        page = await gateway.list_payment_links(TENANT, 0, 2)
        assert [r.token for r in page] == [tokens[2], tokens[1]]
        rest = await gateway.list_payment_links(TENANT, 2, 2)
        assert [r.token for r in rest] == [tokens[0]]

    @pytest.mark.asyncio
    async def test_other_tenants_hidden(self, gateway):
        await gateway.ensure_payment_link(make_request())
        assert await gateway.list_payment_links("tenant-2", 0, 5) == []
