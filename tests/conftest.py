import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from kubelog.config import Cluster
from kubelog.request import RequestOptions

LOG_ROUTE = "/api/v1/namespaces/{namespace}/pods/{pod}/log"


class FakeConfig:
    def __init__(self, server: Optional[str]) -> None:
        self.server = server
        self.applied: List[RequestOptions] = []

    def get_current_cluster(self) -> Optional[Cluster]:
        if self.server is None:
            return None
        return Cluster(name="test.cluster", server=self.server)

    async def apply_to_request(self, request: RequestOptions) -> None:
        request.headers["Authorization"] = "Bearer test-token"
        self.applied.append(request)


class Recorder:
    "Records every call of the done callback"

    def __init__(self) -> None:
        self.calls: list = []

    def __call__(self, err) -> None:
        self.calls.append(err)


@asynccontextmanager
async def serve(handler):
    app = web.Application()
    app.router.add_get(LOG_ROUTE, handler)

    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/")).rstrip("/")
    finally:
        await server.close()


@asynccontextmanager
async def serve_and_hang_up():
    "A server that accepts connections and closes them without answering"

    async def on_connect(reader, writer):
        writer.close()

    server = await asyncio.start_server(on_connect, host="127.0.0.1", port=0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def fake_config():
    return FakeConfig


@pytest.fixture
def log_server():
    return serve


@pytest.fixture
def hang_up_server():
    return serve_and_hang_up
