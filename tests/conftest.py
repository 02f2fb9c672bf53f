from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest_asyncio
from aiohttp import web
from dnslib import DNSRecord
from dns_wire import make_response


@dataclass
class DohController:
    status: int = 200
    delay_s: float = 0.0
    requests: int = 0
    last_content_type: str = ""
    last_id: int = -1


def create_doh_app(controller: DohController) -> web.Application:
    async def handle(request: web.Request) -> web.Response:
        controller.requests += 1
        controller.last_content_type = request.headers.get("Content-Type", "")
        body = await request.read()
        controller.last_id = DNSRecord.parse(body).header.id
        if controller.delay_s:
            await asyncio.sleep(controller.delay_s)
        if controller.status != 200:
            return web.Response(status=controller.status, text="upstream failure")
        return web.Response(body=make_response(body), content_type="application/dns-message")

    app = web.Application()
    app.router.add_post("/dns-query", handle)
    return app


@pytest_asyncio.fixture
async def doh_server(unused_tcp_port_factory) -> tuple[str, DohController]:
    port = unused_tcp_port_factory()
    controller = DohController()
    runner = web.AppRunner(create_doh_app(controller))
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    try:
        yield f"http://127.0.0.1:{port}/dns-query", controller
    finally:
        await runner.cleanup()
