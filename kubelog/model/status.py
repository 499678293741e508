import json
from typing import Any, Dict, List, Optional

RawObject = Dict[str, Any]


class StatusCause:
    def __init__(self, obj: RawObject) -> None:
        self.field: Optional[str] = obj.get("field")
        self.message: Optional[str] = obj.get("message")
        self.reason: Optional[str] = obj.get("reason")

    def __repr__(self) -> str:
        return "<%s field=%r, reason=%r, message=%r>" % (
            self.__class__.__name__,
            self.field,
            self.reason,
            self.message,
        )


class StatusDetails:
    def __init__(self, obj: RawObject) -> None:
        causes = obj.get("causes") or []
        if not isinstance(causes, list):
            raise TypeError("causes must be a list, got: %r" % (causes,))

        self.name: Optional[str] = obj.get("name")
        self.group: Optional[str] = obj.get("group")
        self.kind: Optional[str] = obj.get("kind")
        self.uid: Optional[str] = obj.get("uid")
        self.retry_after_seconds: Optional[int] = obj.get("retryAfterSeconds")
        self.causes: List[StatusCause] = [StatusCause(cause) for cause in causes]


class Status:
    """
    The object the API server returns when a request fails:

    {
      "kind": "Status",
      "apiVersion": "v1",
      "metadata": {},
      "status": "Failure",
      "message": "pods \"nginx\" not found",
      "reason": "NotFound",
      "details": {"name": "nginx", "kind": "pods"},
      "code": 404
    }
    """

    def __init__(self, obj: RawObject) -> None:
        self._obj = obj

        self.kind: Optional[str] = obj.get("kind")
        self.api_version: Optional[str] = obj.get("apiVersion")
        self.metadata: RawObject = obj.get("metadata") or {}
        self.status: Optional[str] = obj.get("status")
        self.message: Optional[str] = obj.get("message")
        self.reason: Optional[str] = obj.get("reason")
        self.code: Optional[int] = obj.get("code")

        self.details: Optional[StatusDetails] = None
        details = obj.get("details")
        if details:
            self.details = StatusDetails(details)

    def __repr__(self) -> str:
        return "<%s status=%r, code=%r, reason=%r, message=%r>" % (
            self.__class__.__name__,
            self.status,
            self.code,
            self.reason,
            self.message,
        )

    def to_dict(self) -> RawObject:
        return dict(self._obj)


class StatusDeserializer:
    types = {
        "Status": Status,
        "V1Status": Status,
    }

    def deserialize(self, raw: str, type_name: str) -> Any:
        """
        Raises ValueError when `raw` is not json or does not have the shape
        of `type_name`.
        """

        cls = self.types.get(type_name)
        if cls is None:
            raise ValueError("Cannot deserialize unknown type %r" % type_name)

        # may raise json.JSONDecodeError, which is a ValueError
        dct = json.loads(raw)

        if not isinstance(dct, dict):
            raise ValueError(
                "Expected a json object for %s, got: %r" % (type_name, dct)
            )

        # a json object of the wrong shape trips over .get on a non-dict
        try:
            return cls(dct)
        except (AttributeError, TypeError) as exc:
            raise ValueError(
                "Json object does not have the shape of %s: %s" % (type_name, exc)
            ) from exc
