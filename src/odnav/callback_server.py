"""Loopback listener that captures the identity provider's redirect response."""

import http.server
import logging
import socketserver
import time
from typing import Optional, Dict
from urllib.parse import urlparse, parse_qs

logger = logging.getLogger(__name__)


class AuthCallbackHandler(http.server.BaseHTTPRequestHandler):
    """HTTP handler for the OAuth redirect."""

    params: Optional[Dict[str, str]] = None

    def do_GET(self):
        """Handle GET request for the OAuth redirect."""
        parsed = urlparse(self.path)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        if 'code' not in params and 'error' not in params:
            # Favicon and other stray requests
            self.send_response(404)
            self.end_headers()
            return

        AuthCallbackHandler.params = params
        if 'code' in params:
            self.send_response(200)
            self.send_header('Content-type', 'text/html')
            self.end_headers()
            self.wfile.write(b"<html><body><h1>Authentication successful!</h1>"
                             b"<p>You can close this window now.</p></body></html>")
        else:
            self.send_response(400)
            self.send_header('Content-type', 'text/html')
            self.end_headers()
            self.wfile.write(b"<html><body><h1>Authentication failed!</h1>"
                             b"<p>Return to the application for details.</p></body></html>")

    def log_message(self, format, *args):
        """Suppress log messages."""
        pass


class _ReusableTCPServer(socketserver.TCPServer):
    allow_reuse_address = True


def wait_for_redirect_response(redirect_uri: str, timeout: float = 120.0) -> Optional[Dict[str, str]]:
    """Listen on the redirect URI's loopback port until the provider calls back.

    Args:
        redirect_uri: Registered loopback redirect URI (e.g. http://localhost:8080)
        timeout: Seconds to wait before giving up

    Returns:
        Query parameters of the redirect (``code``/``state`` or ``error``), or
        None if nothing arrived in time

    Raises:
        OSError: If the port cannot be bound
    """
    parsed = urlparse(redirect_uri)
    if parsed.hostname not in ('localhost', '127.0.0.1'):
        raise ValueError(f"Redirect URI is not a loopback address: {redirect_uri}")
    port = parsed.port or 80

    AuthCallbackHandler.params = None
    deadline = time.monotonic() + timeout

    with _ReusableTCPServer(("127.0.0.1", port), AuthCallbackHandler) as httpd:
        logger.info(f"Waiting for sign-in response on port {port}")
        while AuthCallbackHandler.params is None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Timed out waiting for sign-in response")
                return None
            httpd.timeout = remaining
            httpd.handle_request()

    return AuthCallbackHandler.params
