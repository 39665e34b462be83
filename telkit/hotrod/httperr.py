"""Write an error as a plain-text HTTP response."""

from __future__ import annotations

from typing import Any


def handle_error(handler: Any, err: BaseException | None, status_code: int) -> bool:
    """Reply with ``err`` and ``status_code`` and return True; False if no error.

    ``handler`` is a request handler in the style of
    ``http.server.BaseHTTPRequestHandler``.
    """
    if err is None:
        return False

    body = (str(err) + "\n").encode("utf-8")
    handler.send_response(status_code)
    handler.send_header("Content-Type", "text/plain; charset=utf-8")
    handler.send_header("X-Content-Type-Options", "nosniff")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)
    return True