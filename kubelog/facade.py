import asyncio
import logging
from typing import Optional

from kubelog.async_loop import AsyncLoop
from kubelog.log import DoneCallback, InFlightRequest, LogFetcher, StreamSink
from kubelog.model.log_options import LogOptionsLike


class SyncLogFacade:
    """Blocking access to a LogFetcher that runs on a background AsyncLoop."""

    def __init__(
        self, *, async_loop: AsyncLoop, fetcher: LogFetcher, logger=None
    ) -> None:
        self.async_loop = async_loop
        self.fetcher = fetcher
        self.logger = logger or logging.getLogger("facade")

    def fetch_logs(
        self,
        namespace: str,
        pod_name: str,
        container_name: str,
        sink: StreamSink,
        options: LogOptionsLike = None,
        *,
        done: Optional[DoneCallback] = None,
    ) -> InFlightRequest:
        coro = self.fetcher.fetch_logs(
            namespace, pod_name, container_name, sink, options, done=done
        )
        return self.async_loop.run_coro_until_completion(coro)

    def wait(self, handle: InFlightRequest, timeout: Optional[float] = None) -> None:
        self.async_loop.run_coro_until_completion(handle.wait(), timeout=timeout)

    def abort(self, handle: InFlightRequest, timeout: Optional[float] = 5.0) -> None:
        "Aborts the stream and blocks until its connection has been released"

        self.logger.info("Aborting log stream %r", handle)

        async def abort_and_settle() -> None:
            handle.abort()
            try:
                await asyncio.wait_for(handle.wait_ended(), timeout)
            except asyncio.TimeoutError:
                self.logger.warning(
                    "Log stream %r did not end within %ss of aborting", handle, timeout
                )

        self.async_loop.run_coro_until_completion(abort_and_settle())

    def stream_logs(
        self,
        namespace: str,
        pod_name: str,
        container_name: str,
        sink: StreamSink,
        options: LogOptionsLike = None,
    ) -> None:
        "Streams logs into the sink and blocks until the stream ends"

        handle = self.fetch_logs(namespace, pod_name, container_name, sink, options)

        try:
            self.wait(handle)
        except KeyboardInterrupt:
            self.abort(handle)
            raise
