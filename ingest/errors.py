from typing import Optional


class SourceHTTPError(Exception):
    """A data provider answered with a non-2xx status."""

    def __init__(self, status: int, url: str, body: str, msg: Optional[str] = None):
        self.status = status
        self.url = url
        self.body = body
        self.msg = msg
        super().__init__(f"HTTP {status} from {url} (msg={msg})")


class SourceShapeError(ValueError):
    """A response envelope did not have the expected top-level shape."""


class SourceUnavailable(Exception):
    """Both the primary and the secondary ticker providers failed."""
