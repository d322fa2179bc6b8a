"""One-time Spotify authorization using the PKCE authorization-code flow.

Opens the Spotify consent page, waits for the redirect on a local callback
endpoint, exchanges the code and prints the tokens. The printed refresh token
is what ``SPOTIFY_REFRESH_TOKEN`` expects on the bot's first start.
"""
from __future__ import annotations
import asyncio
import base64
import hashlib
import html
import logging
import os
import secrets
import webbrowser
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests
import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

logger = logging.getLogger(__name__)

SCOPES = [
    "user-modify-playback-state",
    "user-read-playback-state",
]
AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
CALLBACK_PORT = 3000
REDIRECT_URI = f"http://localhost:{CALLBACK_PORT}/callback"

VERIFIER_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"


def random_code_verifier(length: int = 64) -> str:
    return "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_auth_url(client_id: str, scopes: str, redirect_uri: str, verifier: str) -> str:
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "code_challenge_method": "S256",
        "code_challenge": code_challenge(verifier),
        "scope": scopes,
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code_for_token(code: str, client_id: str, redirect_uri: str, verifier: str) -> Dict[str, Any]:
    response = requests.post(
        TOKEN_URL,
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": verifier,
        },
        timeout=10,
    )
    response.raise_for_status()
    return response.json()


class CallbackResult:
    """Completion signal for the single OAuth redirect."""

    def __init__(self) -> None:
        self.done = asyncio.Event()
        self.code: Optional[str] = None
        self.error: Optional[str] = None

    def complete(self, *, code: Optional[str] = None, error: Optional[str] = None) -> None:
        self.code = code
        self.error = error
        self.done.set()


def _callback_html(message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(f"<html><body><p>{html.escape(message)}</p></body></html>", status_code=status_code)


def create_callback_app(result: CallbackResult) -> FastAPI:
    app = FastAPI(title="Spotify authorization callback")

    @app.get("/callback")
    async def callback(code: Optional[str] = None, error: Optional[str] = None):
        if error:
            logger.error("Authorization failed: %s", error)
            result.complete(error=error)
            return _callback_html(error, status_code=400)
        if not code:
            # not terminal; the user can retry the consent page
            return _callback_html("No code provided (something went wrong)", status_code=400)
        logger.info("Got authorization code")
        result.complete(code=code)
        return _callback_html("Code Received. You can close this tab now.")

    return app


async def authorize(client_id: str, *, open_browser=webbrowser.open) -> Dict[str, Any]:
    result = CallbackResult()
    server = uvicorn.Server(
        uvicorn.Config(create_callback_app(result), host="127.0.0.1", port=CALLBACK_PORT, log_level="warning")
    )
    server_task = asyncio.create_task(server.serve())
    verifier = random_code_verifier()
    auth_url = generate_auth_url(client_id, " ".join(SCOPES), REDIRECT_URI, verifier)
    print(f"Opening {auth_url}")
    open_browser(auth_url)
    try:
        await result.done.wait()
    finally:
        server.should_exit = True
        await server_task
    if result.error:
        raise RuntimeError(f"Spotify authorization failed: {result.error}")
    return await asyncio.to_thread(exchange_code_for_token, result.code, client_id, REDIRECT_URI, verifier)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    client_id = os.getenv("SPOTIFY_CLIENT_ID")
    if not client_id:
        raise SystemExit("SPOTIFY_CLIENT_ID is required")
    tokens = asyncio.run(authorize(client_id))
    print(f"Access Token: {tokens.get('access_token')}")
    print(f"Refresh Token: {tokens.get('refresh_token')}")


if __name__ == "__main__":
    main()
