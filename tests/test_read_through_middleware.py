"""
Tests for the read-through and invalidation middlewares.

A small catalog router stands in for the application's resource endpoints;
its handlers count their invocations so tests can tell a cache hit from a
call to the source of truth.
"""
import asyncio
from collections import Counter
from typing import Any, Dict, Optional

import pytest
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from src.cache_gateway import InvalidationConfig, ReadThroughConfig, create_app
from src.cache_gateway.dependencies import get_current_user_optional
from src.cache_gateway.route_rules import RouteTable


def build_catalog_router(calls: Counter) -> APIRouter:
    router = APIRouter()
    products: Dict[int, Dict[str, Any]] = {
        1: {"id": 1, "name": "Widget", "price": 9.5},
        2: {"id": 2, "name": "Gadget", "price": 20.0},
    }

    @router.get("/products")
    async def list_products(page: int = 1):
        calls["list"] += 1
        return {"page": page, "items": sorted(products.values(), key=lambda p: p["id"])}

    @router.get("/products/{product_id}")
    async def get_product(product_id: int):
        calls["detail"] += 1
        if product_id not in products:
            raise HTTPException(status_code=404, detail="Product not found")
        return products[product_id]

    @router.post("/products", status_code=201)
    async def create_product(payload: Dict[str, Any]):
        calls["create"] += 1
        product_id = max(products) + 1
        products[product_id] = {"id": product_id, **payload}
        return products[product_id]

    @router.put("/products/{product_id}")
    async def update_product(product_id: int, payload: Dict[str, Any]):
        calls["update"] += 1
        if product_id not in products:
            raise HTTPException(status_code=404, detail="Product not found")
        products[product_id].update(payload)
        return products[product_id]

    @router.get("/me/orders")
    async def my_orders(user: Optional[Dict[str, Any]] = Depends(get_current_user_optional)):
        calls["orders"] += 1
        owner = user["user_id"] if user else None
        return {"owner": owner, "orders": [f"{owner}-order-1"]}

    @router.get("/reports/summary")
    async def report_summary():
        calls["report"] += 1
        return {"total": calls["report"]}

    @router.get("/banner")
    async def banner():
        calls["banner"] += 1
        return PlainTextResponse("Welcome!")

    return router


READ_ROUTES = [
    ReadThroughConfig(path="/products", resource="products"),
    ReadThroughConfig(path="/products/{product_id}", resource="product", ttl_seconds=120),
    ReadThroughConfig(path="/me/orders", resource="orders", user_scoped=True),
    ReadThroughConfig(
        path="/reports/summary",
        resource="reports",
        condition=lambda request: request.query_params.get("fresh") != "true",
    ),
    ReadThroughConfig(path="/banner", resource="banner"),
]

INVALIDATION_ROUTES = [
    InvalidationConfig(path="/products", patterns=["products:*"]),
    InvalidationConfig(
        path="/products/{product_id}",
        patterns=["products:*", "product:*product_id={product_id}*"],
    ),
]


@pytest.fixture
def calls():
    return Counter()


@pytest.fixture
def client(settings, store, calls):
    app = create_app(
        settings,
        store=store,
        read_routes=READ_ROUTES,
        invalidation_routes=INVALIDATION_ROUTES,
        routers=[build_catalog_router(calls)],
    )
    with TestClient(app) as test_client:
        yield test_client


class TestReadThrough:
    """Test hit and miss behaviour of cached read routes."""

    def test_miss_then_hit(self, client, calls, fake_redis):
        """The second identical request is served from the cache."""
        first = client.get("/products?page=1")
        second = client.get("/products?page=1")

        assert first.status_code == second.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert first.content == second.content
        assert second.headers["content-type"] == "application/json"
        assert calls["list"] == 1
        assert fake_redis.expiry[b"ns:products:page=1"] == 60

    def test_cache_key_header(self, client):
        response = client.get("/products?page=2")
        assert response.headers["X-Cache-Key"] == "ns:products:page=2"

    def test_query_order_shares_entry(self, client, calls):
        client.get("/products?page=1&sort=name")
        response = client.get("/products?sort=name&page=1")

        assert response.headers["X-Cache"] == "HIT"
        assert calls["list"] == 1

    def test_different_params_are_different_entries(self, client, calls):
        client.get("/products?page=1")
        response = client.get("/products?page=2")

        assert response.headers["X-Cache"] == "MISS"
        assert calls["list"] == 2

    def test_route_ttl_and_path_params(self, client, fake_redis):
        response = client.get("/products/1")

        assert response.headers["X-Cache-Key"] == "ns:product:product_id=1"
        assert fake_redis.expiry[b"ns:product:product_id=1"] == 120

    def test_error_responses_are_not_cached(self, client, calls, fake_redis):
        first = client.get("/products/99")
        second = client.get("/products/99")

        assert first.status_code == second.status_code == 404
        assert first.headers["X-Cache"] == second.headers["X-Cache"] == "MISS"
        assert calls["detail"] == 2
        assert b"ns:product:product_id=99" not in fake_redis.data

    def test_non_json_body_is_not_cached(self, client, calls, fake_redis):
        first = client.get("/banner")
        second = client.get("/banner")

        assert first.text == "Welcome!"
        assert second.headers["X-Cache"] == "MISS"
        assert calls["banner"] == 2
        assert fake_redis.data == {}

    def test_condition_skips_cache(self, client, calls):
        client.get("/reports/summary")
        skipped = client.get("/reports/summary?fresh=true")
        cached = client.get("/reports/summary")

        assert skipped.headers["X-Cache"] == "SKIP"
        assert cached.headers["X-Cache"] == "HIT"
        assert calls["report"] == 2

    def test_unconfigured_routes_pass_through(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert "X-Cache" not in response.headers

    def test_corrupt_entry_is_treated_as_miss(self, client, calls, fake_redis):
        fake_redis.data[b"ns:products:page=1"] = b"{broken"

        response = client.get("/products?page=1")

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"
        assert calls["list"] == 1
        assert response.json()["page"] == 1


class TestUserScopedRoutes:
    """Test that user-scoped entries never cross callers."""

    def test_callers_get_their_own_entries(self, client, calls):
        alice = client.get("/me/orders", headers={"X-API-Key": "alice-key"})
        bob = client.get("/me/orders", headers={"X-API-Key": "bob-key"})
        alice_again = client.get("/me/orders", headers={"X-API-Key": "alice-key"})

        assert alice.headers["X-Cache"] == "MISS"
        assert bob.headers["X-Cache"] == "MISS"
        assert alice_again.headers["X-Cache"] == "HIT"
        assert alice_again.json()["owner"] == "alice"
        assert bob.json()["owner"] == "bob"
        assert calls["orders"] == 2

    def test_query_parameter_cannot_claim_another_caller(self, client):
        client.get("/me/orders", headers={"X-API-Key": "alice-key"})

        spoofed = client.get("/me/orders?user_id=alice", headers={"Authorization": "Bearer bob-key"})

        assert spoofed.headers["X-Cache-Key"] == "ns:orders:user_id=bob"
        assert spoofed.json()["owner"] == "bob"

    def test_anonymous_callers_share_a_scope(self, client):
        response = client.get("/me/orders")
        assert response.headers["X-Cache-Key"] == "ns:orders:user_id=anonymous"

    def test_unknown_api_key_is_rejected(self, client, calls):
        response = client.get("/me/orders", headers={"X-API-Key": "nope"})

        assert response.status_code == 401
        assert response.json()["error"]["type"] == "invalid_api_key"
        assert calls["orders"] == 0


class TestInvalidation:
    """Test invalidation after successful mutations."""

    def test_create_invalidates_listing(self, client, calls):
        client.get("/products?page=1")

        created = client.post("/products", json={"name": "Doohickey", "price": 3.0})
        after = client.get("/products?page=1")

        assert created.status_code == 201
        assert "X-Cache" not in created.headers
        assert after.headers["X-Cache"] == "MISS"
        assert any(item["name"] == "Doohickey" for item in after.json()["items"])
        assert calls["list"] == 2

    def test_update_invalidates_listing_and_detail(self, client, fake_redis):
        client.get("/products?page=1")
        client.get("/products/1")
        client.get("/products/2")

        response = client.put("/products/1", json={"price": 11.0})

        assert response.status_code == 200
        assert b"ns:products:page=1" not in fake_redis.data
        assert b"ns:product:product_id=1" not in fake_redis.data
        assert b"ns:product:product_id=2" in fake_redis.data
        assert client.get("/products/1").json()["price"] == 11.0

    def test_failed_mutation_keeps_cache(self, client, fake_redis):
        client.get("/products?page=1")

        response = client.put("/products/99", json={"price": 1.0})

        assert response.status_code == 404
        assert b"ns:products:page=1" in fake_redis.data

    def test_entries_outside_namespace_survive(self, client, fake_redis):
        fake_redis.data[b"other:products:page=1"] = b"[]"

        client.post("/products", json={"name": "Thing"})

        assert b"other:products:page=1" in fake_redis.data


class TestCacheOutage:
    """Test that a broken cache degrades to serving from source."""

    def test_reads_still_succeed(self, client, calls, fake_redis):
        fake_redis.fail = True

        first = client.get("/products?page=1")
        second = client.get("/products?page=1")

        assert first.status_code == second.status_code == 200
        assert first.headers["X-Cache"] == second.headers["X-Cache"] == "MISS"
        assert first.json() == second.json()
        assert calls["list"] == 2

    def test_mutations_still_succeed(self, client, fake_redis):
        fake_redis.fail = True

        response = client.post("/products", json={"name": "Offline"})
        assert response.status_code == 201

    def test_health_reports_cache_state(self, client, fake_redis):
        assert client.get("/health").json()["cache"] == "available"

        fake_redis.fail = True
        client.get("/products?page=1")

        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["cache"] == "unavailable"

    def test_slow_cache_does_not_block_reads(self, client, calls, fake_redis):
        fake_redis.delay = 2.0

        response = client.get("/products?page=3")

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "MISS"
        assert calls["list"] == 1


class TestRouteRules:
    """Test route rule validation and matching."""

    def test_match_extracts_path_params(self):
        table = RouteTable(INVALIDATION_ROUTES)
        rule, params = table.match("PUT", "/products/7")

        assert rule.path == "/products/{product_id}"
        assert params == {"product_id": "7"}

    def test_method_must_be_configured(self):
        table = RouteTable(READ_ROUTES)
        assert table.match("POST", "/products") is None
        assert table.match("GET", "/unknown") is None

    def test_read_routes_are_get_only(self):
        with pytest.raises(TypeError):
            ReadThroughConfig(path="/products", resource="products", methods=frozenset({"POST"}))

        table = RouteTable(READ_ROUTES)
        assert table.match("HEAD", "/products") is None

    def test_invalid_rules_are_rejected(self):
        with pytest.raises(ValueError):
            ReadThroughConfig(path="/x", resource="a:b")
        with pytest.raises(ValueError):
            ReadThroughConfig(path="/x", resource="x", ttl_seconds=0)
        with pytest.raises(ValueError):
            InvalidationConfig(path="/x", patterns=[])

    def test_vary_by_headers_are_part_of_key(self, settings, store):
        app = create_app(
            settings,
            store=store,
            read_routes=[ReadThroughConfig(path="/products", resource="products", vary_by=("Accept-Language",))],
            routers=[build_catalog_router(Counter())],
        )
        with TestClient(app) as client:
            english = client.get("/products", headers={"Accept-Language": "en"})
            german = client.get("/products", headers={"Accept-Language": "de"})

        assert english.headers["X-Cache-Key"] == "ns:products:header_accept-language=en"
        assert german.headers["X-Cache"] == "MISS"


class TestWriteBackOrdering:
    """The response is released before the cache write finishes."""

    @pytest.mark.asyncio
    async def test_body_is_sent_before_write_completes(self, settings, store, fake_redis):
        app = create_app(
            settings,
            store=store,
            read_routes=READ_ROUTES,
            routers=[build_catalog_router(Counter())],
        )
        events = []
        body_sent = asyncio.Event()
        real_setex = fake_redis.setex

        async def slow_setex(key, ttl, value):
            events.append("setex-start")
            try:
                await asyncio.wait_for(body_sent.wait(), timeout=0.3)
            except asyncio.TimeoutError:
                pass
            result = await real_setex(key, ttl, value)
            events.append("setex-done")
            return result

        fake_redis.setex = slow_setex

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/products",
            "raw_path": b"/products",
            "root_path": "",
            "query_string": b"page=1",
            "headers": [(b"host", b"testserver")],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }
        request_read = False

        async def receive():
            nonlocal request_read
            if not request_read:
                request_read = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await body_sent.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            if message["type"] == "http.response.start":
                headers = dict(message["headers"])
                events.append(f"start:{headers[b'x-cache'].decode()}")
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                events.append("body-complete")
                body_sent.set()

        await app(scope, receive, send)
        await store.drain()

        assert events[0] == "start:MISS"
        assert "setex-done" in events
        assert events.index("body-complete") < events.index("setex-done")
        assert b"ns:products:page=1" in fake_redis.data
