"""Control-plane facade and client tests.

The client is exercised against an ``AsyncMock`` channel to check argument
order, and against a real ``FastAPIService`` to check end-to-end dispatch.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi import APIRouter, FastAPI
from fastapi.testclient import TestClient

from service_fastapi.client import FastAPIServiceClient
from service_fastapi.errors import CapacityExceeded, DuplicateCheck, UnknownMethod
from service_fastapi.gateway import named_plugin
from service_fastapi.service import FastAPIService

CONTRACT_METHODS = [
    "addHealthCheck",
    "getServerInstance",
    "register",
    "head",
    "get",
    "getCustom",
    "post",
    "put",
    "delete",
    "patch",
    "options",
    "all",
]


async def _healthy() -> bool:
    return True


async def _echo(reply, params, query, body, request):
    return {"method": request.method, "body": body}


# ============================================================================
# FACADE
# ============================================================================

class TestCallBoundary:
    def test_exposes_contract_methods(self, make_settings):
        service = FastAPIService(make_settings())
        assert sorted(service.method_names) == sorted(CONTRACT_METHODS)

    def test_unknown_method(self, make_settings):
        service = FastAPIService(make_settings())
        with pytest.raises(UnknownMethod):
            asyncio.run(service.call_method("listen"))

    def test_get_server_instance(self, make_settings):
        service = FastAPIService(make_settings())
        app = asyncio.run(service.call_method("getServerInstance"))
        assert isinstance(app, FastAPI)
        assert app is service.pool.selected.app

    def test_add_health_check_errors_propagate(self, make_settings):
        service = FastAPIService(make_settings())

        async def scenario():
            await service.call_method("addHealthCheck", "svcA", "ping", _healthy)
            with pytest.raises(DuplicateCheck):
                await service.call_method("addHealthCheck", "svcA", "ping", _healthy)
            for i in range(9):
                await service.call_method("addHealthCheck", "svcB", f"c{i}", _healthy)
            with pytest.raises(CapacityExceeded):
                await service.call_method("addHealthCheck", "svcC", "extra", _healthy)

        asyncio.run(scenario())
        assert len(service.health) == 10
        assert "svcA-ping" in service.health

    def test_verbs_by_name(self, make_settings):
        service = FastAPIService(make_settings())

        async def scenario():
            for verb in ("post", "put", "patch", "delete", "all"):
                await service.call_method(verb, f"/{verb}/", _echo)

        asyncio.run(scenario())
        client = TestClient(service.pool.selected.app)

        assert client.post("/post", json=[1]).json() == {"method": "POST", "body": [1]}
        assert client.put("/put").json() == {"method": "PUT", "body": None}
        assert client.patch("/patch").json()["method"] == "PATCH"
        assert client.delete("/delete").json()["method"] == "DELETE"
        assert client.get("/all").json()["method"] == "GET"


# ============================================================================
# CLIENT
# ============================================================================

class TestClientArgumentOrder:
    @pytest.mark.parametrize(
        ("call", "args", "expected"),
        [
            ("head", ("/p", "h"), ("head", "/p", "h")),
            ("get", ("/p", "h"), ("get", "/p", "h")),
            ("get_custom", ("/p", {"o": 1}, "h"), ("getCustom", "/p", {"o": 1}, "h")),
            ("post", ("/p", "h"), ("post", "/p", "h")),
            ("put", ("/p", "h"), ("put", "/p", "h")),
            ("delete", ("/p", "h"), ("delete", "/p", "h")),
            ("patch", ("/p", "h"), ("patch", "/p", "h")),
            ("options", ("/p", "h"), ("options", "/p", "h")),
            ("all", ("/p", "h"), ("all", "/p", "h")),
            ("register", ("plugin", {"prefix": "/x"}), ("register", "plugin", {"prefix": "/x"})),
            ("add_health_check", ("svc", "db", "probe"), ("addHealthCheck", "svc", "db", "probe")),
        ],
    )
    def test_forwards_in_order(self, call, args, expected):
        channel = AsyncMock()
        client = FastAPIServiceClient(channel)

        asyncio.run(getattr(client, call)(*args))

        channel.call_method.assert_awaited_once_with(*expected)

    def test_get_server_returns_result(self):
        channel = AsyncMock()
        channel.call_method.return_value = "app"
        assert asyncio.run(FastAPIServiceClient(channel).get_server()) == "app"
        channel.call_method.assert_awaited_once_with("getServerInstance")

    def test_failures_propagate(self):
        channel = AsyncMock()
        channel.call_method.side_effect = DuplicateCheck("svc-db")
        with pytest.raises(DuplicateCheck):
            asyncio.run(FastAPIServiceClient(channel).add_health_check("svc", "db", _healthy))


class TestClientAgainstService:
    def test_end_to_end(self, make_settings):
        service = FastAPIService(make_settings(health=True))
        client = FastAPIServiceClient(service)
        router = named_plugin(APIRouter(), "reports")

        @router.get("/reports")
        async def reports() -> list:
            return ["daily"]

        async def ping(reply, params, query, request):
            reply.send("pong")

        async def scenario():
            await service.init()
            await client.add_health_check("reports", "store", _healthy)
            await client.get("/ping/", ping)
            await client.register(router)
            await client.register(router)
            return await client.get_server()

        app = asyncio.run(scenario())
        http = TestClient(app)

        assert http.get("/ping").text == "pong"
        assert http.get("/reports").json() == ["daily"]
        assert http.get("/health").json()["checks"] == {"reports-store": True}
        assert service.gateway.mounted == frozenset({"reports"})
