# keyproxy/errors.py
import json

from fastapi.responses import JSONResponse


def error_body(message: str, error_type: str) -> dict:
    return {"error": {"message": message, "type": error_type}}


class ProxyError(Exception):
    """Base for every failure the proxy turns into a structured error body."""

    status_code = 500
    error_type = "server_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def payload(self) -> dict:
        return error_body(self.message, self.error_type)

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.payload())

    def to_sse_frame(self) -> bytes:
        """Render the error as an SSE ``error`` event for an already-started stream."""
        data = json.dumps(self.payload(), separators=(",", ":"))
        return f"event: error\ndata: {data}\n\n".encode()


class AuthError(ProxyError):
    status_code = 401
    error_type = "invalid_request_error"


class InternalError(ProxyError):
    pass


class UpstreamError(ProxyError):
    status_code = 502


class UpstreamConnectError(UpstreamError):
    """The upstream could not be reached or failed before sending headers."""


class UpstreamTimeoutError(UpstreamConnectError):
    def __init__(self, message: str = "upstream-timeout") -> None:
        super().__init__(message)


class UpstreamBodyError(UpstreamError):
    """The upstream failed while its response body was being read."""
