import pytest

from control import __version__
from control.registry import ProxyRegistry
from tests.support import api_client, echo_upstream, round_trip

UPSTREAM = "127.0.0.1:6379"


async def create_proxy(client, name="redis", upstream=UPSTREAM, listen="127.0.0.1:0"):
    resp = await client.post("/proxies", json={"name": name, "upstream": upstream, "listen": listen})
    assert resp.status == 201
    return await resp.json()


@pytest.mark.asyncio
async def test_version():
    async with api_client(ProxyRegistry()) as client:
        resp = await client.get("/version")

        assert resp.status == 200
        assert await resp.json() == {"version": __version__}


@pytest.mark.asyncio
async def test_create_resolves_listen_and_lists_proxies():
    async with api_client(ProxyRegistry()) as client:
        resp = await client.get("/proxies")
        assert await resp.json() == {}

        created = await create_proxy(client)
        assert created["name"] == "redis"
        assert created["upstream"] == UPSTREAM
        assert created["enabled"] is True
        assert created["toxics"] == []
        host, _, port = created["listen"].rpartition(":")
        assert host == "127.0.0.1"
        assert int(port) > 0

        resp = await client.get("/proxies")
        listing = await resp.json()
        assert list(listing) == ["redis"]
        assert listing["redis"]["listen"] == created["listen"]

        resp = await client.get("/proxies/redis")
        assert (await resp.json())["listen"] == created["listen"]


@pytest.mark.asyncio
async def test_create_conflicts_and_bad_bodies():
    async with api_client(ProxyRegistry()) as client:
        await create_proxy(client)

        resp = await client.post("/proxies", json={"name": "redis", "upstream": UPSTREAM})
        assert resp.status == 409
        body = await resp.json()
        assert body["status"] == 409
        assert "already exists" in body["error"]

        resp = await client.post("/proxies", data="{not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400

        resp = await client.post("/proxies", json={"name": "nope", "upstream": "missing-port"})
        assert resp.status == 400

        resp = await client.post("/proxies", json=["redis"])
        assert resp.status == 400


@pytest.mark.asyncio
async def test_delete_proxy():
    async with api_client(ProxyRegistry()) as client:
        await create_proxy(client)

        resp = await client.delete("/proxies/redis")
        assert resp.status == 204

        resp = await client.delete("/proxies/redis")
        assert resp.status == 404
        assert (await resp.json())["status"] == 404

        resp = await client.get("/proxies/redis")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_toxic_lifecycle():
    async with api_client(ProxyRegistry()) as client:
        await create_proxy(client)

        resp = await client.post(
            "/proxies/redis/toxics",
            json={"name": "slow", "type": "latency", "stream": "downstream", "toxicity": 1.0, "attributes": {"latency": 100}},
        )
        assert resp.status == 200
        assert await resp.json() == {
            "name": "slow",
            "type": "latency",
            "stream": "downstream",
            "toxicity": 1.0,
            "attributes": {"latency": 100, "jitter": 0},
        }

        resp = await client.post("/proxies/redis/toxics", json={"name": "slow", "type": "latency"})
        assert resp.status == 409

        resp = await client.get("/proxies/redis/downstream/toxics")
        assert list(await resp.json()) == ["slow"]
        resp = await client.get("/proxies/redis/upstream/toxics")
        assert await resp.json() == {}

        resp = await client.post("/proxies/redis/toxics/slow", json={"attributes": {"latency": 5, "jitter": 1}})
        assert resp.status == 200
        assert (await resp.json())["attributes"] == {"latency": 5, "jitter": 1}

        resp = await client.get("/proxies/redis/toxics/slow")
        assert (await resp.json())["attributes"]["latency"] == 5

        resp = await client.get("/proxies/redis/toxics")
        assert [toxic["name"] for toxic in await resp.json()] == ["slow"]

        resp = await client.delete("/proxies/redis/toxics/slow")
        assert resp.status == 204
        resp = await client.delete("/proxies/redis/toxics/slow")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_direction_routes_scope_the_stream():
    async with api_client(ProxyRegistry()) as client:
        await create_proxy(client)

        resp = await client.post("/proxies/redis/upstream/toxics", json={"type": "bandwidth", "attributes": {"rate": 10}})
        assert resp.status == 200
        toxic = await resp.json()
        assert toxic["stream"] == "upstream"
        assert toxic["name"] == "bandwidth_upstream"

        resp = await client.post("/proxies/redis/downstream/toxics", json={"name": "bandwidth_upstream", "type": "bandwidth"})
        assert resp.status == 200

        resp = await client.post("/proxies/redis/upstream/toxics/bandwidth_upstream", json={"toxicity": 0.25})
        assert (await resp.json())["toxicity"] == 0.25
        resp = await client.get("/proxies/redis/downstream/toxics/bandwidth_upstream")
        assert (await resp.json())["toxicity"] == 1.0

        resp = await client.delete("/proxies/redis/upstream/toxics/bandwidth_upstream")
        assert resp.status == 204
        resp = await client.get("/proxies/redis/upstream/toxics")
        assert await resp.json() == {}

        resp = await client.get("/proxies/redis/sideways/toxics")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_invalid_toxics_are_rejected():
    async with api_client(ProxyRegistry()) as client:
        await create_proxy(client)

        for payload in (
            {"type": "teleport"},
            {"type": "latency", "stream": "sideways"},
            {"type": "latency", "toxicity": 2},
            {"type": "latency", "attributes": {"latency": -5}},
        ):
            resp = await client.post("/proxies/redis/toxics", json=payload)
            assert resp.status == 400, payload

        resp = await client.post("/proxies/missing/toxics", json={"type": "latency"})
        assert resp.status == 404

        resp = await client.get("/proxies/redis/toxics")
        assert await resp.json() == []


@pytest.mark.asyncio
async def test_disable_enable_and_reset_through_api():
    async with echo_upstream() as upstream:
        async with api_client(ProxyRegistry()) as client:
            proxy = await create_proxy(client, upstream=upstream.address)
            await client.post("/proxies/redis/toxics", json={"type": "latency", "attributes": {"latency": 10}})

            resp = await client.post("/proxies/redis", json={"enabled": False})
            assert resp.status == 200
            assert (await resp.json())["enabled"] is False

            resp = await client.post("/proxies/redis", json={"enabled": True})
            body = await resp.json()
            assert body["enabled"] is True
            assert body["listen"] == proxy["listen"]
            assert [toxic["name"] for toxic in body["toxics"]] == ["latency_downstream"]
            assert await round_trip(body["listen"], b"ping") == b"ping"

            await client.post("/proxies/redis", json={"enabled": False})
            resp = await client.post("/reset")
            assert resp.status == 204

            resp = await client.get("/proxies/redis")
            body = await resp.json()
            assert body["enabled"] is True
            assert body["toxics"] == []


@pytest.mark.asyncio
async def test_update_cannot_take_another_proxys_listen_address():
    async with api_client(ProxyRegistry()) as client:
        first = await create_proxy(client, name="first")
        await create_proxy(client, name="second")
        resp = await client.post("/proxies/second", json={"enabled": False})
        second = await resp.json()

        resp = await client.post("/proxies/second", json={"listen": first["listen"]})
        assert resp.status == 409

        resp = await client.get("/proxies/second")
        body = await resp.json()
        assert body["listen"] == second["listen"]
        assert body["enabled"] is False


@pytest.mark.asyncio
async def test_populate():
    async with api_client(ProxyRegistry()) as client:
        resp = await client.post(
            "/populate",
            json=[
                {"name": "one", "upstream": UPSTREAM, "listen": "127.0.0.1:0"},
                {"name": "two", "upstream": UPSTREAM, "listen": "127.0.0.1:0", "enabled": False},
            ],
        )
        assert resp.status == 201
        body = await resp.json()
        assert [proxy["name"] for proxy in body["proxies"]] == ["one", "two"]
        assert body["proxies"][1]["enabled"] is False

        resp = await client.post("/populate", json=[{"name": "bad", "upstream": "nowhere"}])
        assert resp.status == 400
