import asyncio
import enum
import inspect
import logging
from typing import Any, Callable, Dict, Optional, Protocol, Tuple, Type

from aiohttp import ClientResponse, ClientSession
from aiohttp.client_exceptions import ClientError

from kubelog.errors import ApiError, ConfigurationError, KubeLogError, TransportError
from kubelog.model.log_options import LogOptionsLike, LogRequestSpec
from kubelog.model.status import StatusDeserializer
from kubelog.request import RequestOptions
from kubelog.tools.logs import CtxLogger


class ClusterLike(Protocol):
    server: str


class ConfigResolver(Protocol):
    def get_current_cluster(self) -> Optional[ClusterLike]:
        ...

    async def apply_to_request(self, request: RequestOptions) -> None:
        ...


class StatusDeserializerProtocol(Protocol):
    def deserialize(self, raw: str, type_name: str) -> Any:
        ...


class StreamSink(Protocol):
    def write(self, data: bytes) -> Any:
        ...


DoneCallback = Callable[[Optional[BaseException]], Any]


# everything that means we failed to talk to the server
TRANSPORT_ERRORS: Tuple[Type[BaseException], ...] = (
    ClientError,
    asyncio.TimeoutError,
    OSError,
)


class FetchState(enum.Enum):
    AWAITING_HEADERS = "AWAITING_HEADERS"
    STREAMING = "STREAMING"
    AWAITING_BODY = "AWAITING_BODY"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


TRANSITIONS = {
    FetchState.AWAITING_HEADERS: (
        FetchState.STREAMING,
        FetchState.AWAITING_BODY,
        FetchState.REJECTED,
    ),
    FetchState.STREAMING: (FetchState.RESOLVED, FetchState.REJECTED),
    FetchState.AWAITING_BODY: (FetchState.REJECTED,),
    FetchState.RESOLVED: (),
    FetchState.REJECTED: (),
}


class InFlightRequest:
    """
    Handle on a log stream that has started. Log bytes keep flowing into the
    sink until the server closes the stream or the caller calls `abort()`.
    """

    def __init__(
        self, *, operation: "FetchOperation", response: ClientResponse
    ) -> None:
        self._operation = operation
        self._response = response

    def __repr__(self) -> str:
        return "<%s url=%r, status=%r, state=%s>" % (
            self.__class__.__name__,
            str(self.url),
            self.status,
            self._operation.state.value,
        )

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self._response.headers)

    @property
    def url(self) -> Any:
        return self._response.url

    @property
    def state(self) -> FetchState:
        return self._operation.state

    def done(self) -> bool:
        return self._operation.completed.is_set()

    def abort(self) -> None:
        self._operation.abort()

    async def wait(self) -> None:
        "Waits for the stream to end. Raises the error that ended it, if any."

        await self._operation.completed.wait()

        if self._operation.error is not None:
            raise self._operation.error

    async def wait_ended(self) -> None:
        "Waits for the stream to end and its connection to be released."

        await self._operation.completed.wait()


class FetchOperation:
    """
    One log fetch, from sending the request to the end of the stream.

    Every outcome goes through `complete()`, which settles the state and
    notifies the done callback exactly once.
    """

    def __init__(
        self,
        *,
        spec: LogRequestSpec,
        sink: StreamSink,
        deserializer: StatusDeserializerProtocol,
        done: Optional[DoneCallback] = None,
        logger: CtxLogger,
    ) -> None:
        self.spec = spec
        self.sink = sink
        self.deserializer = deserializer
        self.done = done
        self.log = logger

        self.state = FetchState.AWAITING_HEADERS
        self.error: Optional[BaseException] = None
        self.completed = asyncio.Event()

        self.session: Optional[ClientSession] = None
        self.owns_session = False
        self.response: Optional[ClientResponse] = None
        self.pipe_task: Optional["asyncio.Task[None]"] = None
        self.cleanup_task: Optional["asyncio.Task[None]"] = None
        self.aborted = False

    def transition(self, state: FetchState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                "Illegal state transition %s -> %s" % (self.state.value, state.value)
            )

        self.log.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def complete(self, error: Optional[BaseException]) -> None:
        if self.completed.is_set():
            self.log.warning("Completion after the fetch had ended: %r", error)
            return

        self.error = error
        self.transition(FetchState.REJECTED if error else FetchState.RESOLVED)
        self.completed.set()

        if self.done is not None:
            try:
                self.done(error)
            except Exception:
                self.log.exception("Done callback raised")

    async def release(self) -> None:
        if self.response is not None:
            self.response.close()

        if self.owns_session and self.session is not None:
            await self.session.close()

    async def finish(self, error: Optional[BaseException]) -> None:
        await self.release()
        self.complete(error)

    async def start(
        self, session: ClientSession, request: RequestOptions, owns_session: bool
    ) -> InFlightRequest:
        self.session = session
        self.owns_session = owns_session

        self.log.info("Streaming pod logs on %s", request.url)
        try:
            response = await session.request(
                request.method, request.url, **request.to_kwargs()
            )
        except TRANSPORT_ERRORS as exc:
            self.log.warning("Stream pod logs request failed: %r", exc)
            error = TransportError(exc, url=request.url)
            error.__cause__ = exc
            await self.finish(error)
            raise error

        except Exception as exc:
            self.log.exception("Stream pod logs request failed unexpectedly")
            await self.finish(exc)
            raise

        self.response = response
        return await self.on_headers(response)

    async def on_headers(self, response: ClientResponse) -> InFlightRequest:
        self.log.debug("Received response headers with status %s", response.status)

        if response.status == 200:
            self.transition(FetchState.STREAMING)
            handle = InFlightRequest(operation=self, response=response)
            self.pipe_task = asyncio.ensure_future(self.pipe(response))
            self.pipe_task.add_done_callback(self.on_pipe_done)
            return handle

        # anything else: buffer the body so the error can be decoded
        self.transition(FetchState.AWAITING_BODY)
        try:
            error: BaseException = await self.read_error(response)
        except Exception as exc:
            self.log.exception("Reading the error response failed")
            error = exc
        self.log.warning("Stream pod logs request failed: %r", error)

        await self.finish(error)
        raise error

    async def read_error(self, response: ClientResponse) -> KubeLogError:
        try:
            # the server is free to send bytes that don't match its charset
            body = await response.text(errors="replace")
        except TRANSPORT_ERRORS as exc:
            error = TransportError(exc, url=str(response.url))
            error.__cause__ = exc
            return error

        try:
            status = self.deserializer.deserialize(body, "Status")
        except Exception as exc:
            self.log.debug("Error body is not a Status object: %s", exc)
            return ApiError(
                response.status, body, headers=response.headers, raw_body=body
            )

        return ApiError(
            response.status, status, headers=response.headers, raw_body=body
        )

    async def write(self, chunk: bytes) -> None:
        result = self.sink.write(chunk)

        # asyncio style sinks return an awaitable
        if inspect.isawaitable(result):
            await result

    async def pipe(self, response: ClientResponse) -> None:
        error: Optional[BaseException] = None
        nbytes = 0

        try:
            while True:
                try:
                    chunk = await response.content.readany()
                except TRANSPORT_ERRORS as exc:
                    error = TransportError(exc, url=str(response.url))
                    error.__cause__ = exc
                    self.log.warning("Log stream broke off: %r", exc)
                    break

                if not chunk:
                    self.log.info("Log stream ended after %s bytes", nbytes)
                    break

                nbytes += len(chunk)
                await self.write(chunk)

        except asyncio.CancelledError:
            self.log.info("Log stream aborted after %s bytes", nbytes)
            await self.finish(None)

            if not self.aborted:
                raise
            return

        except Exception as exc:
            self.log.exception("Writing to the sink failed")
            error = exc

        await self.finish(error)

    def on_pipe_done(self, task: "asyncio.Task[None]") -> None:
        if self.completed.is_set():
            return

        # cancelled before the pipe got to run, so nothing has released yet
        self.log.info("Log stream aborted before it started")
        self.cleanup_task = asyncio.ensure_future(self.finish(None))

    def abort(self) -> None:
        if self.aborted or self.completed.is_set():
            return

        self.aborted = True

        if self.pipe_task is not None:
            self.pipe_task.cancel()


class LogFetcher:
    def __init__(
        self,
        config: ConfigResolver,
        *,
        session: Optional[ClientSession] = None,
        deserializer: Optional[StatusDeserializerProtocol] = None,
        logger=None,
    ) -> None:
        self.config = config
        self.session = session
        self.deserializer = deserializer or StatusDeserializer()
        self.logger = logger or logging.getLogger("log-fetcher")

    def get_ctx_logger(self, spec: LogRequestSpec) -> CtxLogger:
        return CtxLogger(
            logger=self.logger,
            extra={"target": spec.pretty()},
            prefix="[%(target)s] ",
        )

    async def fetch_logs(
        self,
        namespace: str,
        pod_name: str,
        container_name: str,
        sink: StreamSink,
        options: LogOptionsLike = None,
        *,
        done: Optional[DoneCallback] = None,
    ) -> InFlightRequest:
        """
        Streams the logs of one container into `sink`.

        Returns once the server has answered 200 and bytes have started to
        flow, raises `ConfigurationError`, `TransportError` or `ApiError`
        otherwise. `done` is a legacy hook called once when the fetch ends,
        with None or with the error.
        """

        spec = LogRequestSpec(
            namespace=namespace,
            pod_name=pod_name,
            container_name=container_name,
            options=options,
        )
        operation = FetchOperation(
            spec=spec,
            sink=sink,
            deserializer=self.deserializer,
            done=done,
            logger=self.get_ctx_logger(spec),
        )

        cluster = self.config.get_current_cluster()
        if cluster is None:
            error = ConfigurationError("No currently active cluster")
            operation.complete(error)
            raise error

        server = cluster.server.rstrip("/")
        request = RequestOptions(
            method="GET",
            url=f"{server}{spec.path}",
            params=spec.query_params(),
        )

        try:
            await self.config.apply_to_request(request)
        except Exception as exc:
            operation.complete(exc)
            raise

        session = self.session
        owns_session = session is None
        if session is None:
            session = ClientSession()

        return await operation.start(session, request, owns_session)
