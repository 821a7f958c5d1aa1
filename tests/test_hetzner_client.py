from __future__ import annotations

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from hetzner_k3s.core.exceptions import ProviderError
from hetzner_k3s.hetzner import CloudProvider, HetznerClient

pytestmark = [pytest.mark.unit]

REQUESTS = web.AppKey("requests", list[tuple[str, str, Any]])

SERVERS = [{"id": i, "name": f"s{i}", "labels": {}} for i in range(1, 6)]


def hetzner_app() -> web.Application:
    app = web.Application()
    requests: list[tuple[str, str, Any]] = []
    app[REQUESTS] = requests

    def unauthorized(request: web.Request) -> web.Response | None:
        if request.headers.get("Authorization") != "Bearer secret":
            return web.json_response(
                {"error": {"code": "unauthorized", "message": "unable to authenticate"}}, status=401
            )
        return None

    async def list_servers(request: web.Request) -> web.Response:
        if (denied := unauthorized(request)) is not None:
            return denied
        requests.append(("GET", request.path, dict(request.query)))
        if "name" in request.query:
            found = [s for s in SERVERS if s["name"] == request.query["name"]]
            return web.json_response({"servers": found})
        page = int(request.query["page"])
        per_page = 2
        chunk = SERVERS[(page - 1) * per_page : page * per_page]
        next_page = page + 1 if page * per_page < len(SERVERS) else None
        return web.json_response(
            {"servers": chunk, "meta": {"pagination": {"page": page, "next_page": next_page}}}
        )

    async def create_network(request: web.Request) -> web.Response:
        body = await request.json()
        requests.append(("POST", request.path, body))
        if body["name"] == "taken":
            return web.json_response(
                {"error": {"code": "uniqueness_error", "message": "name is already used"}}, status=409
            )
        return web.json_response(
            {"network": {"id": 10, "subnets": [], **body}}, status=201
        )

    async def add_subnet(request: web.Request) -> web.Response:
        requests.append(("POST", request.path, await request.json()))
        return web.json_response({"action": {"id": 1, "status": "running"}}, status=201)

    async def delete_network(request: web.Request) -> web.Response:
        requests.append(("DELETE", request.path, None))
        return web.Response(status=204)

    async def create_load_balancer(request: web.Request) -> web.Response:
        body = await request.json()
        requests.append(("POST", request.path, body))
        return web.json_response({"load_balancer": {"id": 3, "name": body["name"]}}, status=201)

    app.router.add_get("/servers", list_servers)
    app.router.add_post("/networks", create_network)
    app.router.add_post("/networks/{id}/actions/add_subnet", add_subnet)
    app.router.add_delete("/networks/{id}", delete_network)
    app.router.add_post("/load_balancers", create_load_balancer)
    return app


@pytest.fixture
async def server():
    srv = TestServer(hetzner_app())
    await srv.start_server()
    yield srv
    await srv.close()


@pytest.fixture
async def client(server: TestServer):
    async with HetznerClient("secret", base_url=f"http://{server.host}:{server.port}") as c:
        yield c


def test_client_satisfies_protocol() -> None:
    assert isinstance(HetznerClient("t"), CloudProvider)


class TestServers:
    @pytest.mark.asyncio
    async def test_list_follows_pages(self, client: HetznerClient, server: TestServer) -> None:
        servers = await client.list_servers()
        assert [s["name"] for s in servers] == ["s1", "s2", "s3", "s4", "s5"]
        pages = [q["page"] for _, _, q in server.app[REQUESTS]]
        assert pages == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_get_by_name(self, client: HetznerClient) -> None:
        found = await client.get_server("s3")
        assert found is not None
        assert found["id"] == 3
        assert await client.get_server("nope") is None

    @pytest.mark.asyncio
    async def test_bad_token(self, server: TestServer) -> None:
        async with HetznerClient("wrong", base_url=f"http://{server.host}:{server.port}") as c:
            with pytest.raises(ProviderError) as exc:
                await c.list_servers()
        assert exc.value.status == 401
        assert exc.value.reason == "unable to authenticate"


class TestNetworks:
    @pytest.mark.asyncio
    async def test_create_and_add_subnet(self, client: HetznerClient, server: TestServer) -> None:
        network = await client.create_network("prod", "10.0.0.0/16")
        await client.add_subnet(network["id"], "10.0.0.0/16", "eu-central")

        assert network["id"] == 10
        [_, (method, path, body)] = server.app[REQUESTS]
        assert (method, path) == ("POST", "/networks/10/actions/add_subnet")
        assert body == {"type": "cloud", "ip_range": "10.0.0.0/16", "network_zone": "eu-central"}

    @pytest.mark.asyncio
    async def test_conflict_message_is_extracted(self, client: HetznerClient) -> None:
        with pytest.raises(ProviderError, match="name is already used") as exc:
            await client.create_network("taken", "10.0.0.0/16")
        assert exc.value.status == 409
        assert "Create network 'taken'" in str(exc.value)

    @pytest.mark.asyncio
    async def test_delete(self, client: HetznerClient, server: TestServer) -> None:
        await client.delete_network(10)
        assert server.app[REQUESTS] == [("DELETE", "/networks/10", None)]


class TestLoadBalancers:
    @pytest.mark.asyncio
    async def test_create_targets_masters_by_label(self, client: HetznerClient, server: TestServer) -> None:
        await client.create_load_balancer("prod-api", "nbg1", 10, "cluster=prod,role=master")

        [(_, _, body)] = server.app[REQUESTS]
        assert body["load_balancer_type"] == "lb11"
        assert body["network"] == 10
        assert body["services"][0]["listen_port"] == 6443
        assert body["targets"] == [
            {
                "type": "label_selector",
                "label_selector": {"selector": "cluster=prod,role=master"},
                "use_private_ip": True,
            }
        ]
