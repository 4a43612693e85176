"""Errors raised by the server API client."""

from __future__ import annotations


class ServerApiError(RuntimeError):
    """Base class for failures talking to the agent server."""


class InvalidServerURL(ServerApiError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid server URL: {url!r}")
        self.url = url


class TransportError(ServerApiError):
    """Connection refused, timeout or a stream that broke mid-read."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(f"Network error: {message}")
        self.__cause__ = cause


class ResponseDecodeError(ServerApiError):
    """A 2xx response whose body did not match the expected shape."""

    def __init__(self, method: str, path: str, detail: str) -> None:
        super().__init__(f"Failed to decode response for {method} {path}: {detail}")
        self.method = method
        self.path = path


class HttpStatusError(ServerApiError):
    """Non-2xx response. The raw body is kept verbatim for display."""

    kind = "Unknown"

    def __init__(self, status_code: int, method: str, path: str, body: str) -> None:
        self.status_code = status_code
        self.method = method
        self.path = path
        self.body = body
        super().__init__(
            f"Server error ({status_code}): {self.kind} error for {method} {path}: {body or '<empty>'}"
        )


class ClientError(HttpStatusError):
    kind = "Client"


class ServerError(HttpStatusError):
    kind = "Server"


def status_error(status_code: int, method: str, path: str, body: str) -> HttpStatusError:
    if 400 <= status_code < 500:
        return ClientError(status_code, method, path, body)
    if 500 <= status_code < 600:
        return ServerError(status_code, method, path, body)
    return HttpStatusError(status_code, method, path, body)
