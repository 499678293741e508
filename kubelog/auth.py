import json
import logging
import os
import subprocess
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional, Union

import humanize
from aiohttp import BasicAuth
from dateutil.parser import parse as parse_date

from kubelog.tools.timekeeping import date_now

if TYPE_CHECKING:
    from kubelog.config import Context, ExecConfig


class BearerAuth(BasicAuth):
    """
    aiohttp only ships BasicAuth and does:

        def update_auth(self, auth: Optional[BasicAuth]) -> None:
            ...
            if not isinstance(auth, helpers.BasicAuth):

    So to slot into this API we need a subclass of BasicAuth, which is what
    we're doing here. It's a bit hacky but it works.
    """

    def __new__(cls, token: str) -> "BearerAuth":
        return super().__new__(cls, token)  # type: ignore

    def __init__(self, token: str) -> None:
        self.token = token

    def __repr__(self) -> str:
        return "%s(token=SET)" % self.__class__.__name__

    def encode(self) -> str:
        return f"Bearer {self.token}"


AuthBase = Union[BasicAuth, BearerAuth]


class AuthContainer:
    def __init__(
        self, *, auth: Optional[AuthBase], expiry_date: Optional[datetime] = None
    ) -> None:
        self.auth = auth
        self.expiry_date = expiry_date

    def has_expired(self) -> bool:
        if self.expiry_date is None:
            return False

        # Trigger a refresh a few minutes before the deadline to account for
        # clock skew. Otherwise we assume the credentials are still good but
        # they may be considered expired by the API server.
        return date_now() >= (self.expiry_date - timedelta(minutes=5))


class AuthProvider:
    def __init__(self, context: "Context", logger=None) -> None:
        self.context = context
        self.logger = logger or logging.getLogger("auth")

        self.container: Optional[AuthContainer] = None  # lazy attribute

    def run_exec_plugin(self, cmd: "ExecConfig") -> AuthContainer:
        args = [cmd.command] + cmd.args

        environ = dict(os.environ)
        environ.update(cmd.env)

        proc = subprocess.Popen(
            args=args,
            env=environ,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

        stdout_bytes, stderr_bytes = proc.communicate()
        stdout, stderr = stdout_bytes.decode(), stderr_bytes.decode()

        if proc.returncode == 0:
            doc = json.loads(stdout)

            status = doc.get("status") or {}
            token = status.get("token")
            expiration_timestamp = status.get("expirationTimestamp")

            expiry_date = None
            if expiration_timestamp:
                expiry_date = parse_date(expiration_timestamp)
                time_left = humanize.naturaldelta(expiry_date - date_now())

                self.logger.info(
                    "[%s] Successfully obtained exec credentials valid until: %s, "
                    "will expire in: %s",
                    self.context.short_name,
                    expiry_date,
                    time_left,
                )

            if token:
                auth = BearerAuth(token=token)
                return AuthContainer(auth=auth, expiry_date=expiry_date)

            self.logger.error(
                "[%s] Exec credentials contained no token", self.context.short_name
            )
            return AuthContainer(auth=None)

        self.logger.error(
            "Failed to obtain exec credentials:"
            "\nexit_code: %s\nstdout: <<<%s>>>\nstderr: <<<%s>>>",
            proc.returncode,
            stdout.strip(),
            stderr.strip(),
        )

        return AuthContainer(auth=None)

    def create_container(self) -> AuthContainer:
        user = self.context.user

        if user.username and user.password:
            auth = BasicAuth(login=user.username, password=user.password)
            return AuthContainer(auth=auth)

        elif user.token:
            return AuthContainer(auth=BearerAuth(token=user.token))

        elif user.token_file:
            with open(user.token_file) as fl:
                token = fl.read().strip()

            # token files get rotated (eg. service account tokens) so re-read
            # them every so often
            expiry_date = date_now() + timedelta(minutes=6)
            return AuthContainer(auth=BearerAuth(token=token), expiry_date=expiry_date)

        elif user.exec:
            return self.run_exec_plugin(user.exec)

        # client certs are handled by the ssl context
        return AuthContainer(auth=None)

    def get_auth(self) -> Optional[AuthBase]:
        if self.container is None or self.container.has_expired():
            self.container = self.create_container()

        return self.container.auth
