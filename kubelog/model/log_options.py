from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from kubelog.tools.timekeeping import format_rfc3339


def stringify_query_value(value: Any) -> str:
    # the API server wants "true"/"false", not "True"/"False"
    if isinstance(value, bool):
        return "true" if value else "false"

    if isinstance(value, datetime):
        return format_rfc3339(value)

    return str(value)


class LogOptions:
    """
    Server side log selection. Every field is optional and None means the
    server default applies. Nothing is validated here, the API server rejects
    invalid combinations (eg. since_seconds together with since_time).
    """

    # attribute name -> query arg name
    query_names = {
        "follow": "follow",
        "limit_bytes": "limitBytes",
        "pretty": "pretty",
        "previous": "previous",
        "since_seconds": "sinceSeconds",
        "since_time": "sinceTime",
        "tail_lines": "tailLines",
        "timestamps": "timestamps",
    }

    def __init__(
        self,
        *,
        follow: Optional[bool] = None,
        limit_bytes: Optional[int] = None,
        pretty: Optional[bool] = None,
        previous: Optional[bool] = None,
        since_seconds: Optional[int] = None,
        since_time: Optional[datetime] = None,
        tail_lines: Optional[int] = None,
        timestamps: Optional[bool] = None,
    ) -> None:
        self.follow = follow
        self.limit_bytes = limit_bytes
        self.pretty = pretty
        self.previous = previous
        self.since_seconds = since_seconds
        self.since_time = since_time
        self.tail_lines = tail_lines
        self.timestamps = timestamps

    def __repr__(self) -> str:
        attrs = ", ".join(
            "%s=%r" % (attname, getattr(self, attname))
            for attname in self.query_names
            if getattr(self, attname) is not None
        )
        return "<%s %s>" % (self.__class__.__name__, attrs)

    def to_query(self) -> Dict[str, str]:
        query = {}

        for attname, query_name in self.query_names.items():
            value = getattr(self, attname)
            if value is None:
                continue

            query[query_name] = stringify_query_value(value)

        return query


LogOptionsLike = Union[LogOptions, Mapping[str, Any], None]


class LogRequestSpec:
    path_template = "/api/v1/namespaces/{namespace}/pods/{pod_name}/log"

    def __init__(
        self,
        *,
        namespace: str,
        pod_name: str,
        container_name: str,
        options: LogOptionsLike = None,
    ) -> None:
        self.namespace = namespace
        self.pod_name = pod_name
        self.container_name = container_name
        self.options = options

    def __repr__(self) -> str:
        return "<%s namespace=%r, pod_name=%r, container_name=%r, options=%r>" % (
            self.__class__.__name__,
            self.namespace,
            self.pod_name,
            self.container_name,
            self.options,
        )

    @property
    def path(self) -> str:
        return self.path_template.format(
            namespace=self.namespace, pod_name=self.pod_name
        )

    def query_params(self) -> Dict[str, str]:
        query: Dict[str, str] = {}

        if isinstance(self.options, LogOptions):
            query.update(self.options.to_query())

        elif self.options:
            for key, value in self.options.items():
                if value is None:
                    continue
                query[key] = stringify_query_value(value)

        # set last so it can't be overridden by the options
        query["container"] = self.container_name

        return query

    def pretty(self) -> str:
        return f"{self.namespace}/{self.pod_name}/{self.container_name}"
