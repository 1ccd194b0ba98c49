"""HTTP surface of the protocol core."""

from .http_server import CalibraHTTPServer, error_middleware

__all__ = ["CalibraHTTPServer", "error_middleware"]
