# Interactive helpers for the Fitbit consent step. Each authorizer shows the
# authorize URL to the user and returns the ``code`` Fitbit redirects back with.

from __future__ import annotations

import html
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from fitbit_sync.domain.exceptions import AuthExchangeFailed
from fitbit_sync.infrastructure.log_utils import log_message

DEFAULT_CALLBACK_TIMEOUT = 300.0


def extract_code(response: str, expected_state: Optional[str] = None) -> str:
    """Pull the authorization code out of a pasted redirect URL or a bare code."""
    text = (response or "").strip()
    if not text:
        raise AuthExchangeFailed("No authorization code supplied.")

    if "?" not in text and "=" not in text:
        return text

    query = urlparse(text).query if "?" in text else text
    params = parse_qs(query)
    if "error" in params:
        raise AuthExchangeFailed(f"Fitbit authorization denied: {params['error'][0]}")
    _check_state(params, expected_state)
    codes = params.get("code")
    if not codes or not codes[0]:
        raise AuthExchangeFailed("Missing OAuth code in redirect URL.")
    return codes[0]


def _check_state(params: Dict[str, List[str]], expected_state: Optional[str]) -> None:
    if expected_state is None:
        return
    received = params.get("state", [None])[0]
    if received != expected_state:
        raise AuthExchangeFailed("OAuth state mismatch; ignoring callback.")


class _CallbackHandler(BaseHTTPRequestHandler):
    """Captures the first callback request on the loopback server."""

    def do_GET(self):
        parsed = urlparse(self.path)
        params = parse_qs(parsed.query)
        server: "_CallbackServer" = self.server  # type: ignore[assignment]

        if parsed.path != server.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        server.params = params
        ok = "code" in params
        self.send_response(200 if ok else 400)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        if ok:
            self.wfile.write(
                b"<html><body><h2>Fitbit connected.</h2><p>You can close this tab.</p></body></html>"
            )
        else:
            error = params.get("error", ["unknown"])[0]
            self.wfile.write(f"<html><body><h2>Error: {html.escape(error)}</h2></body></html>".encode())

    def log_message(self, format, *args):
        pass


class _CallbackServer(HTTPServer):
    def __init__(self, address, callback_path: str):
        super().__init__(address, _CallbackHandler)
        self.callback_path = callback_path or "/"
        self.params: Optional[Dict[str, List[str]]] = None


class LoopbackAuthorizer:
    """Opens the browser and waits for Fitbit's redirect on a local HTTP server.

    The redirect URI registered with Fitbit must point at this machine, e.g.
    ``http://127.0.0.1:8189/callback``.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        open_browser: Callable[[str], bool] = webbrowser.open,
        echo: Callable[[str], None] = print,
    ) -> None:
        self.timeout = timeout
        self._open_browser = open_browser
        self._echo = echo

    def begin(self, url: str, redirect_uri: str, state: str) -> str:
        target = urlparse(redirect_uri)
        if target.scheme != "http" or not target.hostname:
            raise AuthExchangeFailed(f"Loopback authorization needs an http:// redirect URI, got {redirect_uri}")

        server = _CallbackServer((target.hostname, target.port or 80), target.path)
        server.timeout = 1.0
        try:
            self._echo("Opening browser for Fitbit authorization...")
            self._echo(f"If the browser doesn't open, visit:\n{url}\n")
            self._open_browser(url)
            log_message(f"Waiting for Fitbit callback on {redirect_uri}.", "INFO")

            deadline = time.monotonic() + self.timeout
            while server.params is None:
                if time.monotonic() >= deadline:
                    raise AuthExchangeFailed(f"No Fitbit callback within {int(self.timeout)}s.")
                server.handle_request()
            params = server.params
        finally:
            server.server_close()

        if "error" in params:
            raise AuthExchangeFailed(f"Fitbit authorization denied: {params['error'][0]}")
        _check_state(params, state)
        return params["code"][0]


class ConsolePromptAuthorizer:
    """Prints the consent URL and asks the user to paste the redirect back.

    Works on headless machines where no browser can reach a loopback port.
    """

    def __init__(
        self,
        *,
        prompt: Callable[[str], str] = input,
        echo: Callable[[str], None] = print,
    ) -> None:
        self._prompt = prompt
        self._echo = echo

    def begin(self, url: str, redirect_uri: str, state: str) -> str:
        self._echo("Step 1: Visit this URL in your browser and approve access:")
        self._echo(url)
        self._echo("")
        response = self._prompt(
            f"Step 2: Paste the full redirect URL (starting with {redirect_uri}) or just the code: "
        )
        return extract_code(response, state)


__all__ = ["ConsolePromptAuthorizer", "LoopbackAuthorizer", "extract_code"]
