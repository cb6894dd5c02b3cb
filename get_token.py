#!/usr/bin/env python3
import logging
import secrets
import threading
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

from core.engine import build_engine
from core.errors import AuthError
from core.settings import load_settings

# ---------- LOGGING ----------
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

# ---------- CONFIG ----------
settings = load_settings()
engine = build_engine(settings)

# Global state
server_instance = None
state_token = None


class RequestHandler(BaseHTTPRequestHandler):
    """Handles the OAuth redirect to the configured callback URI."""

    def do_GET(self):
        try:
            parsed = urlparse(self.path)
            query = parse_qs(parsed.query)

            callback_state = query.get("state", [None])[0]
            if callback_state != state_token:
                self._write(400, b"Invalid state parameter")
                return

            code = query.get("code", [None])[0]
            if not code:
                self._write(400, b"No authorization code received")
                return

            logger.info("Authorization code received")
            self._write(
                200,
                b"<html><body><h1>Signed in to OpenProject</h1>"
                b"<p>You can close this tab.</p>"
                b"</body></html>",
                content_type="text/html; charset=utf-8",
            )

            exchange_token(code)

        except Exception as e:
            logger.exception("Error handling callback: %s", e)
            self._write(500, b"Internal server error")

    def log_message(self, fmt, *args):
        # Silence default HTTP server access logs
        logger.debug("%s - %s", self.client_address[0], fmt % args)

    def _write(self, status: int, body: bytes, content_type: str = "text/plain"):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        self.wfile.write(body)


def exchange_token(auth_code: str) -> None:
    """Exchange the authorization code and store the session."""
    logger.info("Exchanging authorization code for tokens...")
    try:
        session = engine.token_manager.exchange_code(auth_code)
        logger.info(
            "Session stored in the %s credential store (namespace=%s, refresh token: %s)",
            settings.state_backend,
            settings.credential_namespace,
            "yes" if session.refresh_token else "no",
        )
    except AuthError as e:
        logger.error("Token exchange failed: %s", e)
    finally:
        # Stop the local server once we have finished
        if server_instance:
            threading.Thread(target=server_instance.shutdown, daemon=True).start()


def login() -> None:
    """Run the OAuth authorization-code flow locally."""
    global state_token, server_instance

    if not settings.client_id or not settings.client_secret:
        logger.error("Set OPENPROJECT_CLIENT_ID and OPENPROJECT_CLIENT_SECRET.")
        return

    state_token = secrets.token_urlsafe(32)
    login_url = engine.token_manager.authorization_url(state_token)

    logger.info("Opening browser to: %s", login_url)
    webbrowser.open(login_url, new=2)

    callback = urlparse(settings.redirect_uri)
    server_host, server_port = callback.hostname or "localhost", callback.port or 8080
    server_instance = HTTPServer((server_host, server_port), RequestHandler)
    logger.info("Waiting for OAuth callback on %s ...", settings.redirect_uri)

    # Handle exactly one request, up to 5 minutes
    server_instance.timeout = 300
    server_instance.handle_request()
    server_instance.server_close()


if __name__ == "__main__":
    login()
