"""HTTP control plane, wire-compatible with the Toxiproxy REST API."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from aiohttp import web

from control import __version__
from control.registry import ProxyRegistry
from network.errors import InvalidRequest, InvalidToxic, ToxiproxyError
from network.toxics import build_toxic

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", ProxyRegistry)


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(text=json.dumps(data), status=status, content_type="application/json")


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except ToxiproxyError as exc:
        if exc.status >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.path, exc)
        else:
            logger.debug("[API] %s %s rejected (%d): %s", request.method, request.path, exc.status, exc)
        return json_response(exc.to_dict(), status=exc.status)


async def _read_json(request: web.Request) -> Any:
    if not request.can_read_body:
        return {}
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidRequest(f"bad request body: {exc}") from exc


async def _read_object(request: web.Request) -> Dict[str, Any]:
    body = await _read_json(request)
    if not isinstance(body, dict):
        raise InvalidRequest("request body must be a JSON object")
    return body


class ToxiproxyAPI:
    """Request handlers bound to one proxy registry."""

    def __init__(self, registry: ProxyRegistry) -> None:
        self.registry = registry

    # ------------------------------------------------------------------ #
    # Server                                                             #
    # ------------------------------------------------------------------ #
    async def version(self, request: web.Request) -> web.Response:
        return json_response({"version": __version__})

    async def reset(self, request: web.Request) -> web.Response:
        await self.registry.reset()
        return web.Response(status=204)

    # ------------------------------------------------------------------ #
    # Proxies                                                            #
    # ------------------------------------------------------------------ #
    async def list_proxies(self, request: web.Request) -> web.Response:
        return json_response({proxy.name: proxy.to_dict() for proxy in self.registry.list()})

    async def create_proxy(self, request: web.Request) -> web.Response:
        body = await _read_object(request)
        enabled = body.get("enabled", True)
        if not isinstance(enabled, bool):
            raise InvalidRequest(f"enabled must be a boolean, got {enabled!r}")
        proxy = await self.registry.create(
            name=body.get("name"),
            upstream=body.get("upstream"),
            listen=body.get("listen") or "localhost:0",
            enabled=enabled,
        )
        return json_response(proxy.to_dict(), status=201)

    async def populate(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if isinstance(body, dict) and "proxies" in body:
            body = body["proxies"]
        proxies = await self.registry.populate(body)
        return json_response({"proxies": [proxy.to_dict() for proxy in proxies]}, status=201)

    async def get_proxy(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        return json_response(proxy.to_dict())

    async def update_proxy(self, request: web.Request) -> web.Response:
        body = await _read_object(request)
        proxy = await self.registry.update(
            request.match_info["proxy"],
            listen=body.get("listen"),
            upstream=body.get("upstream"),
            enabled=body.get("enabled"),
        )
        return json_response(proxy.to_dict())

    async def delete_proxy(self, request: web.Request) -> web.Response:
        await self.registry.delete(request.match_info["proxy"])
        return web.Response(status=204)

    # ------------------------------------------------------------------ #
    # Toxics                                                             #
    # ------------------------------------------------------------------ #
    async def list_toxics(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        return json_response([toxic.to_dict() for toxic in proxy.toxics()])

    async def direction_toxics(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        toxics = proxy.toxics(request.match_info["direction"])
        return json_response({toxic.name: toxic.to_dict() for toxic in toxics})

    async def create_toxic(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        body = await _read_object(request)
        toxic = proxy.add_toxic(build_toxic(body, stream=request.match_info.get("direction")))
        return json_response(toxic.to_dict())

    async def get_toxic(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        toxic = proxy.find_toxic(request.match_info["toxic"], request.match_info.get("direction"))
        return json_response(toxic.to_dict())

    async def update_toxic(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        body = await _read_object(request)
        attributes: Optional[Dict[str, Any]] = body.get("attributes")
        if attributes is not None and not isinstance(attributes, dict):
            raise InvalidToxic("Toxic attributes must be a JSON object")
        toxic = proxy.update_toxic(
            request.match_info["toxic"],
            stream=request.match_info.get("direction"),
            toxicity=body.get("toxicity"),
            attributes=attributes,
        )
        return json_response(toxic.to_dict())

    async def delete_toxic(self, request: web.Request) -> web.Response:
        proxy = self.registry.find(request.match_info["proxy"])
        proxy.remove_toxic(request.match_info["toxic"], request.match_info.get("direction"))
        return web.Response(status=204)


def create_app(registry: ProxyRegistry) -> web.Application:
    """Build the aiohttp application serving ``registry``."""
    api = ToxiproxyAPI(registry)

    app = web.Application(middlewares=[error_middleware])
    app[REGISTRY_KEY] = registry

    app.router.add_get("/version", api.version)
    app.router.add_post("/reset", api.reset)
    app.router.add_post("/populate", api.populate)

    app.router.add_get("/proxies", api.list_proxies)
    app.router.add_post("/proxies", api.create_proxy)
    app.router.add_get("/proxies/{proxy}", api.get_proxy)
    app.router.add_post("/proxies/{proxy}", api.update_proxy)
    app.router.add_patch("/proxies/{proxy}", api.update_proxy)
    app.router.add_delete("/proxies/{proxy}", api.delete_proxy)

    app.router.add_get("/proxies/{proxy}/toxics", api.list_toxics)
    app.router.add_post("/proxies/{proxy}/toxics", api.create_toxic)
    app.router.add_get("/proxies/{proxy}/toxics/{toxic}", api.get_toxic)
    app.router.add_post("/proxies/{proxy}/toxics/{toxic}", api.update_toxic)
    app.router.add_patch("/proxies/{proxy}/toxics/{toxic}", api.update_toxic)
    app.router.add_delete("/proxies/{proxy}/toxics/{toxic}", api.delete_toxic)

    direction = "/proxies/{proxy}/{direction:upstream|downstream}/toxics"
    app.router.add_get(direction, api.direction_toxics)
    app.router.add_post(direction, api.create_toxic)
    app.router.add_get(direction + "/{toxic}", api.get_toxic)
    app.router.add_post(direction + "/{toxic}", api.update_toxic)
    app.router.add_delete(direction + "/{toxic}", api.delete_toxic)

    return app


async def start_api(registry: ProxyRegistry, host: str, port: int) -> web.AppRunner:
    """Serve the control plane on ``host:port``; the caller cleans up the runner."""
    runner = web.AppRunner(create_app(registry))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("[API] Listening on http://%s:%d", host, port)
    return runner
