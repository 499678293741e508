from ssl import SSLContext
from typing import Any, Dict, Optional, Union

from aiohttp import BasicAuth
from aiohttp.client import ClientTimeout


class RequestOptions:
    """
    Describes an outgoing request before it is sent. The kubeconfig layer
    decorates it with credentials, TLS settings and a timeout, then it's
    turned into keyword arguments for `ClientSession.request`.
    """

    def __init__(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.method = method
        self.url = url
        self.params: Dict[str, str] = dict(params or {})
        self.headers: Dict[str, str] = dict(headers or {})

        self.auth: Optional[BasicAuth] = None
        # False disables certificate verification, None uses the defaults
        self.ssl: Union[SSLContext, bool, None] = None
        self.timeout: Optional[ClientTimeout] = None

    def __repr__(self) -> str:
        return "<%s method=%r, url=%r, params=%r, auth=%s, ssl=%r>" % (
            self.__class__.__name__,
            self.method,
            self.url,
            self.params,
            "SET" if self.auth is not None else "UNSET",
            self.ssl,
        )

    def to_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = dict(
            params=self.params,
            headers=self.headers,
            allow_redirects=True,
        )

        if self.auth is not None:
            kwargs["auth"] = self.auth

        if self.ssl is not None:
            kwargs["ssl"] = self.ssl

        if self.timeout is not None:
            kwargs["timeout"] = self.timeout

        return kwargs
