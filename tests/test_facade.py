"""Tests for kubelog.facade, kubelog.async_loop and kubelog.main modules."""

import asyncio
import io

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as HttpTestServer

from kubelog.async_loop import launch_in_background_thread
from kubelog.errors import ApiError
from kubelog.facade import SyncLogFacade
from kubelog.log import FetchState, LogFetcher
from kubelog.main import build_options, create_parser, main


async def stream_lines(request: web.Request) -> web.Response:
    return web.Response(body=b"one\ntwo\n")


async def forbidden(request: web.Request) -> web.Response:
    status = {"kind": "Status", "code": 403, "reason": "Forbidden", "message": "no"}
    return web.json_response(status, status=403)


async def stream_forever(request: web.Request) -> web.StreamResponse:
    resp = web.StreamResponse(status=200)
    await resp.prepare(request)

    for _ in range(200):
        await resp.write(b"tick\n")
        await asyncio.sleep(0.05)

    return resp


async def start_server(handler) -> HttpTestServer:
    app = web.Application()
    app.router.add_get("/api/v1/namespaces/{namespace}/pods/{pod}/log", handler)

    server = HttpTestServer(app)
    await server.start_server()
    return server


@pytest.fixture
def async_loop():
    loop = launch_in_background_thread()
    yield loop
    loop.shutdown()


class TestAsyncLoop:
    def test_runs_coroutines(self, async_loop) -> None:
        async def answer() -> int:
            return 42

        assert async_loop.run_coro_until_completion(answer()) == 42
        assert async_loop.launch_coro(answer()).result(timeout=5) == 42


class TestSyncLogFacade:
    def test_stream_logs(self, async_loop, fake_config) -> None:
        server = async_loop.run_coro_until_completion(start_server(stream_lines))
        try:
            url = str(server.make_url("/")).rstrip("/")
            facade = SyncLogFacade(
                async_loop=async_loop, fetcher=LogFetcher(fake_config(url))
            )
            sink = io.BytesIO()

            facade.stream_logs("default", "web-1", "app", sink)
        finally:
            async_loop.run_coro_until_completion(server.close())

        assert sink.getvalue() == b"one\ntwo\n"

    def test_api_error_is_raised(self, async_loop, fake_config, recorder) -> None:
        server = async_loop.run_coro_until_completion(start_server(forbidden))
        try:
            url = str(server.make_url("/")).rstrip("/")
            facade = SyncLogFacade(
                async_loop=async_loop, fetcher=LogFetcher(fake_config(url))
            )

            with pytest.raises(ApiError) as excinfo:
                facade.fetch_logs(
                    "default", "web-1", "app", io.BytesIO(), done=recorder
                )
        finally:
            async_loop.run_coro_until_completion(server.close())

        assert excinfo.value.status_code == 403
        assert excinfo.value.reason == "Forbidden"
        assert recorder.calls == [excinfo.value]


    def test_abort_releases_stream(self, async_loop, fake_config, recorder) -> None:
        server = async_loop.run_coro_until_completion(start_server(stream_forever))
        try:
            url = str(server.make_url("/")).rstrip("/")
            facade = SyncLogFacade(
                async_loop=async_loop, fetcher=LogFetcher(fake_config(url))
            )

            handle = facade.fetch_logs(
                "default", "web-1", "app", io.BytesIO(), done=recorder
            )
            facade.abort(handle)

            # no waiting needed, abort returns once the stream has ended
            assert handle.done()
            assert handle.state is FetchState.RESOLVED
            assert recorder.calls == [None]
        finally:
            async_loop.run_coro_until_completion(server.close())

    def test_abort_after_end_is_harmless(self, async_loop, fake_config) -> None:
        server = async_loop.run_coro_until_completion(start_server(stream_lines))
        try:
            url = str(server.make_url("/")).rstrip("/")
            facade = SyncLogFacade(
                async_loop=async_loop, fetcher=LogFetcher(fake_config(url))
            )

            handle = facade.fetch_logs("default", "web-1", "app", io.BytesIO())
            facade.wait(handle, timeout=5)
            facade.abort(handle)
        finally:
            async_loop.run_coro_until_completion(server.close())

        assert handle.state is FetchState.RESOLVED


class TestCommandLine:
    def test_options_from_args(self) -> None:
        args = create_parser().parse_args(
            ["web-1", "-c", "app", "-f", "--tail", "20", "--timestamps"]
        )
        options = build_options(args)

        assert args.pod == "web-1"
        assert args.container == "app"
        assert options.to_query() == {
            "follow": "true",
            "tailLines": "20",
            "timestamps": "true",
        }

    def test_unmatched_context(self, tmp_path, monkeypatch, capsys) -> None:
        path = tmp_path / "config"
        path.write_text(
            """
kind: Config
clusters:
- name: c
  cluster:
    server: https://kube.example.com
users:
- name: u
  user: {}
contexts:
- name: dev
  context:
    cluster: c
    user: u
"""
        )
        monkeypatch.setenv("KUBECONFIG", str(path))

        assert main(["web-1", "-c", "app", "--context", "prod*"]) == 1
        assert "Need exactly 1 cluster context" in capsys.readouterr().err

    def test_no_current_context(self, tmp_path, monkeypatch, capsys) -> None:
        monkeypatch.setenv("KUBECONFIG", str(tmp_path / "missing"))

        assert main(["web-1", "-c", "app"]) == 1
        assert "No current-context" in capsys.readouterr().err
