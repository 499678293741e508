import asyncio
import logging
from asyncio import AbstractEventLoop
from concurrent.futures import Future
from threading import Event, Thread
from typing import Any, Optional


class AsyncLoop:
    def __init__(
        self, *, loop: AbstractEventLoop, initialized_event: Event, logger=None
    ) -> None:
        self.loop = loop
        self.initialized_event = initialized_event
        self.logger = logger or logging.getLogger("async-loop")

        self.thread: Optional[Thread] = None
        self.exit_event: Optional[asyncio.Event] = None

    async def initialize(self) -> None:
        self.exit_event = asyncio.Event()

        # tell the world we are up and running
        self.initialized_event.set()

    async def mainloop(self) -> None:
        await self.initialize()

        assert self.exit_event is not None  # help mypy
        await self.exit_event.wait()

        self.logger.info("Async loop exiting")

    # Helpers to facilitate running tasks on the async loop from another thread

    def launch_coro(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def run_coro_until_completion(self, coro, timeout: Optional[float] = None) -> Any:
        fut = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return fut.result(timeout=timeout)

    def shutdown(self) -> None:
        if self.exit_event is not None:
            self.loop.call_soon_threadsafe(self.exit_event.set)

        if self.thread is not None:
            self.thread.join()
            self.loop.close()


def launch_in_background_thread() -> AsyncLoop:
    loop = asyncio.new_event_loop()

    initialized_event = Event()
    async_loop = AsyncLoop(loop=loop, initialized_event=initialized_event)

    thread = Thread(
        target=loop.run_until_complete,
        args=[async_loop.mainloop()],
        name="AsyncLoopThread",
        daemon=True,
    )
    async_loop.thread = thread
    thread.start()

    # wait until the loop has started running on a separate thread and is ready
    # to be used
    initialized_event.wait()

    return async_loop

