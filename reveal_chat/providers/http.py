import json
from typing import Any
from urllib import error as urlerror
from urllib import request as urlrequest

from reveal_chat.constants import AI_HTTP_TIMEOUT_SECONDS
from reveal_chat.errors import TransientError
from reveal_chat.models import ErrorKind

ERROR_DETAIL_LIMIT = 200


class ProviderHTTPError(RuntimeError):
    """Non-2xx answer from a model provider; `status` feeds error classification."""

    def __init__(self, status: int, detail: str = "", retry_after: str | None = None):
        super().__init__(f"HTTP {status} from provider. {detail}".rstrip())
        self.status = status
        self.detail = detail
        self.retry_after = retry_after


def _decode_body(raw: bytes) -> dict[str, Any]:
    text = raw.decode("utf-8")
    if not text.strip():
        return {}
    data = json.loads(text)
    return data if isinstance(data, dict) else {}


def _error_from_http(exc: urlerror.HTTPError) -> ProviderHTTPError:
    detail = exc.read().decode("utf-8", errors="replace")[:ERROR_DETAIL_LIMIT]
    headers = exc.headers or {}
    return ProviderHTTPError(exc.code, detail.strip(), headers.get("Retry-After"))


def post_json_request(
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    timeout: float = AI_HTTP_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    request = urlrequest.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Accept": "application/json",
            **headers,
        },
        method="POST",
    )
    try:
        with urlrequest.urlopen(request, timeout=timeout) as response:
            return _decode_body(response.read())
    except urlerror.HTTPError as exc:
        raise _error_from_http(exc) from exc
    except (OSError, ValueError) as exc:
        # URLError and socket timeouts are OSErrors; bad JSON or UTF-8 are ValueErrors.
        raise TransientError(
            f"Provider request failed: {exc}", ErrorKind.NETWORK
        ) from exc
