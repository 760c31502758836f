"""Listener pool tests: construction, selection, start/stop on real sockets."""

from __future__ import annotations

import asyncio
import socket
from unittest.mock import MagicMock, patch

import httpx
import pytest

from service_fastapi.errors import ListenerConfigError
from service_fastapi.listeners import ListenerKind, ListenerPool
from service_fastapi.service import FastAPIService


# ============================================================================
# CONSTRUCTION
# ============================================================================

class TestConstruction:
    def test_http_only(self, make_settings):
        pool = ListenerPool(make_settings(type="http", httpPort=8080))
        assert [h.kind for h in pool.handles] == [ListenerKind.HTTP]
        assert pool.selected.port == 8080
        assert pool.health_listener is None

    def test_https_only(self, make_settings, tls_files):
        cert, key = tls_files
        pool = ListenerPool(
            make_settings(type="https", httpsPort=8443, httpsCert=cert, httpsKey=key)
        )
        assert [h.kind for h in pool.handles] == [ListenerKind.HTTPS]
        assert pool.selected.scheme == "https"
        assert pool.selected.port == 8443

    def test_dedicated_health_listener(self, make_settings):
        pool = ListenerPool(make_settings(health=True, healthServerPort=9001))
        kinds = {h.kind for h in pool.handles}
        assert kinds == {ListenerKind.HTTP, ListenerKind.HEALTH}
        assert pool.health_listener.port == 9001
        assert pool.selected.kind is ListenerKind.HTTP

    def test_health_port_without_health_flag(self, make_settings):
        pool = ListenerPool(make_settings(health=False, healthServerPort=9001))
        assert pool.health_listener is None

    @pytest.mark.parametrize("missing", ["cert", "key", "both"])
    def test_https_without_cert_or_key_is_fatal(self, make_settings, tls_files, missing):
        cert, key = tls_files
        overrides = {"type": "https"}
        if missing != "cert" and missing != "both":
            overrides["httpsCert"] = cert
        if missing != "key" and missing != "both":
            overrides["httpsKey"] = key

        with patch("service_fastapi.listeners.socket.socket") as sock_cls:
            with pytest.raises(ListenerConfigError):
                ListenerPool(make_settings(**overrides))
            sock_cls.assert_not_called()

    def test_https_with_nonexistent_files_is_fatal(self, make_settings, tmp_path):
        settings = make_settings(
            type="https",
            httpsCert=str(tmp_path / "missing.crt"),
            httpsKey=str(tmp_path / "missing.key"),
        )
        with pytest.raises(ListenerConfigError, match="cert"):
            ListenerPool(settings)

    def test_service_construction_fails_for_bad_tls(self, make_settings):
        with pytest.raises(ListenerConfigError):
            FastAPIService(make_settings(type="https"))

    def test_trust_gate_is_outermost_middleware(self, make_settings):
        pool = ListenerPool(make_settings(behindTraefikWithCloudflareWarp=True))
        names = [m.cls.__name__ for m in pool.selected.app.user_middleware]
        assert names == ["TrustedProxyMiddleware", "RequestLoggingMiddleware"]


# ============================================================================
# START / STOP
# ============================================================================

class TestLifecycle:
    def test_scenario_http_with_shared_health(self, make_settings):
        service = FastAPIService(
            make_settings(type="http", host="127.0.0.1", httpPort=0, health=True)
        )

        async def scenario():
            await service.init()
            await service.run()
            try:
                address = service.pool.selected.bound_address
                async with httpx.AsyncClient(trust_env=False, base_url=address) as client:
                    response = await client.get("/health")
            finally:
                await service.dispose()
            return address, response

        address, response = asyncio.run(scenario())

        assert address.startswith("http://127.0.0.1:")
        assert not address.endswith(":0")
        assert response.status_code == 200
        body = response.json()
        assert body["checks"] == {}
        assert body["alive"] is True
        assert service.pool.selected.closed is True

    def test_dedicated_health_listener_serves_202(self, make_settings, free_port):
        service = FastAPIService(
            make_settings(host="127.0.0.1", httpPort=0, health=True, healthServerPort=free_port)
        )

        async def scenario():
            await service.init()
            await service.run()
            try:
                async with httpx.AsyncClient(trust_env=False) as client:
                    health = await client.get(f"{service.pool.health_listener.bound_address}/health")
                    app = await client.get(f"{service.pool.selected.bound_address}/health")
            finally:
                await service.dispose()
            return health, app

        health, app = asyncio.run(scenario())
        assert health.status_code == 202
        assert app.status_code == 404

    def test_bind_failure_does_not_stop_siblings(self, make_settings, free_port):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        taken = blocker.getsockname()[1]

        metrics = MagicMock()
        service = FastAPIService(
            make_settings(
                host="127.0.0.1",
                httpPort=taken,
                health=True,
                healthServerPort=free_port,
                exclusive=True,
            ),
            metrics=metrics,
        )

        async def scenario():
            await service.init()
            await service.run()
            try:
                async with httpx.AsyncClient(trust_env=False) as client:
                    return await client.get(f"{service.pool.health_listener.bound_address}/health")
            finally:
                await service.dispose()

        try:
            response = asyncio.run(scenario())
        finally:
            blocker.close()

        assert response.status_code == 202
        assert service.pool.selected.bound_address is None
        assert service.pool.selected.closed is False
        metrics.event.assert_called_once()
        assert metrics.event.call_args.args == ("listener_bind_failed",)
        assert metrics.event.call_args.kwargs["listener"] == "HTTP"

    def test_stop_is_idempotent(self, make_settings):
        pool = ListenerPool(make_settings(host="127.0.0.1", httpPort=0))

        async def scenario():
            await pool.start()
            server = pool.selected.server
            await pool.stop()
            await pool.stop()
            return server

        server = asyncio.run(scenario())
        assert server.should_exit is True
        assert pool.selected.closed is True
        assert pool.selected.running is False

    def test_stop_without_start_is_noop(self, make_settings):
        pool = ListenerPool(make_settings())
        asyncio.run(pool.stop())
        assert pool.selected.closed is False
        assert pool.selected.server is None

    def test_routes_registered_after_start_are_served(self, make_settings):
        service = FastAPIService(make_settings(host="127.0.0.1", httpPort=0))

        async def hello(reply, params, query, request):
            return {"hello": params["name"]}

        async def scenario():
            await service.init()
            await service.run()
            try:
                await service.get("/hello/{name}/", hello)
                async with httpx.AsyncClient(trust_env=False, base_url=service.pool.selected.bound_address) as client:
                    return await client.get("/hello/world")
            finally:
                await service.dispose()

        response = asyncio.run(scenario())
        assert response.json() == {"hello": "world"}
