from typing import Any, Mapping, Optional, Union

from kubelog.model.status import Status


class KubeLogError(Exception):
    pass


class ConfigurationError(KubeLogError):
    pass


class TransportError(KubeLogError):
    def __init__(self, cause: BaseException, url: Optional[str] = None) -> None:
        super().__init__(cause)

        self.cause = cause
        self.url = url

    def __repr__(self) -> str:
        return "%s(cause=%r, url=%r)" % (
            self.__class__.__name__,
            self.cause,
            self.url,
        )

    def __str__(self) -> str:
        if self.url:
            return f"Request to {self.url} failed: {self.cause!r}"
        return f"Request failed: {self.cause!r}"


class ApiError(KubeLogError):
    """
    The API server answered with something other than 200.

    `body` is the decoded Status object when the server sent one, otherwise
    the raw response text.
    """

    def __init__(
        self,
        status_code: int,
        body: Union[Status, str],
        headers: Optional[Mapping[str, Any]] = None,
        raw_body: Optional[str] = None,
    ) -> None:
        super().__init__()

        self.status_code = status_code
        self.body = body
        self.raw_body = raw_body if raw_body is not None else str(body)
        self.headers = dict(headers or {})

    def __repr__(self) -> str:
        return "%s(status_code=%r, reason=%r, message=%r)" % (
            self.__class__.__name__,
            self.status_code,
            self.reason,
            self.message,
        )

    def __str__(self) -> str:
        return self.__repr__()

    @property
    def status(self) -> Optional[Status]:
        return self.body if isinstance(self.body, Status) else None

    @property
    def reason(self) -> Optional[str]:
        if self.status is not None:
            return self.status.reason
        return None

    @property
    def message(self) -> str:
        if self.status is not None:
            return self.status.message or ""
        return self.body  # type: ignore

    def is_retryable(self) -> bool:
        return self.status_code in (429, 500, 502, 503, 504)
