#!/usr/bin/env python3
"""
Key Relay — OAuth 2.0 authorization-code relay with disposable key pairs.

Order of operations:
  1. Caller generates a key pair with /keypair.
  2. User logs in with /login?writeKey=<writeKey>; the write key is sent
     to the provider as the OAuth2 state.
  3. Provider redirects back to /callback; the code is exchanged and the
     access token is stored against the write key.
  4. Caller collects the token once with /token?readKey=<readKey>.

Key pairs live in memory only and are lost when the server restarts.
Client credentials come from a .env file; provider endpoints and scopes
default to Figma and may be overridden in provider.yaml.
"""

import argparse
import json
import logging
import os
import time
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.routing import Route

from relay_oauth import AUTH_STYLES, DEFAULT_TIMEOUT, ExchangeFailed, ProviderClient, ProviderConfig
from relay_store import RecordNotFound, TokenNotReady, StateNotFound, TokenStore

logger = logging.getLogger("relay")
audit_logger = logging.getLogger("relay-audit")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_PORT = 8080
DEFAULT_PROVIDER: dict[str, Any] = {
    "redirect_url": "http://localhost:8080/callback",
    "auth_url": "https://www.figma.com/oauth",
    "token_url": "https://www.figma.com/api/oauth/token",
    "scopes": ["file_variables:read"],
    "timeout": DEFAULT_TIMEOUT,
    "auth_style": "params",
}

USAGE = (
    "Key Relay\n"
    "\n"
    "  1. GET /keypair                  -> {readKey, writeKey}\n"
    "  2. GET /login?writeKey=<key>     -> provider consent page\n"
    "  3. GET /token?readKey=<key>      -> {accessToken} (single use)\n"
)


def _load_env(env_path: Path) -> tuple[str, str]:
    """Load CLIENT_ID / CLIENT_SECRET from the .env file."""
    if not env_path.exists():
        raise SystemExit(f"Error loading .env file: {env_path} not found")
    load_dotenv(env_path)

    client_id = os.environ.get("CLIENT_ID", "")
    client_secret = os.environ.get("CLIENT_SECRET", "")
    missing = [n for n, v in (("CLIENT_ID", client_id), ("CLIENT_SECRET", client_secret)) if not v]
    if missing:
        raise SystemExit(f"Missing {', '.join(missing)} in {env_path}")
    return client_id, client_secret


def _load_provider(
    client_id: str,
    client_secret: str,
    config_path: Path | None = None,
) -> ProviderConfig:
    """Build the provider config from defaults plus an optional provider.yaml."""
    if config_path is None:
        config_path = Path(__file__).parent / "provider.yaml"

    settings = dict(DEFAULT_PROVIDER)
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
        if raw is None:
            raw = {}
        if not isinstance(raw, dict) or not isinstance(raw.get("provider", {}), dict):
            raise SystemExit(f"Invalid provider config: expected a 'provider' mapping in {config_path}")
        overrides = raw.get("provider", {})
        unknown = set(overrides) - set(DEFAULT_PROVIDER)
        if unknown:
            raise SystemExit(
                f"Unknown provider setting(s) in {config_path}: {', '.join(sorted(unknown))}"
            )
        settings.update(overrides)

    scopes = settings["scopes"]
    if isinstance(scopes, str):
        scopes = scopes.split()
    if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
        raise SystemExit(f"Invalid scopes in {config_path}: expected a list of strings")

    try:
        timeout = float(settings["timeout"])
    except (TypeError, ValueError):
        raise SystemExit(f"Invalid timeout in {config_path}: {settings['timeout']!r}")

    if settings["auth_style"] not in AUTH_STYLES:
        raise SystemExit(
            f"Invalid auth_style '{settings['auth_style']}' in {config_path}. "
            f"Valid options: {', '.join(AUTH_STYLES)}"
        )

    return ProviderConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_url=str(settings["redirect_url"]),
        auth_url=str(settings["auth_url"]),
        token_url=str(settings["token_url"]),
        scopes=scopes,
        timeout=timeout,
        auth_style=str(settings["auth_style"]),
    )


# ---------------------------------------------------------------------------
# Audit logging
# ---------------------------------------------------------------------------

def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

async def _param(request: Request, name: str) -> str:
    """First value of ``name``; form body fields win over the query string."""
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            value = form.get(name)
            if isinstance(value, str):
                return value
    return request.query_params.get(name, "")


def _json(data: dict[str, Any]) -> Response:
    try:
        return JSONResponse(data)
    except (TypeError, ValueError) as e:
        logger.error("response encoding failed: %s", e)
        return PlainTextResponse("response encoding failed", status_code=500)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def _index_route(request: Request) -> Response:
    return PlainTextResponse(USAGE)


async def _keypair_route(request: Request) -> Response:
    """Create a key pair, store it in memory and return it."""
    store: TokenStore = request.app.state.store
    record = store.create()
    _audit("keypair_created", read_key=record.read_key[:8], pending=store.pending())
    return _json({"readKey": record.read_key, "writeKey": record.write_key})


async def _login_route(request: Request) -> Response:
    """Redirect to the provider's consent page; needs an issued write key."""
    store: TokenStore = request.app.state.store
    oauth: ProviderClient = request.app.state.oauth

    write_key = await _param(request, "writeKey")
    if not write_key or not store.exists_by_write_key(write_key):
        _audit("login_rejected", write_key=write_key[:8])
        return PlainTextResponse("Invalid write key", status_code=400)

    _audit("login_redirect", write_key=write_key[:8])
    return RedirectResponse(oauth.authorize_url(write_key), status_code=307)


async def _callback_route(request: Request) -> Response:
    """Exchange the provider's code and store the token under the state."""
    store: TokenStore = request.app.state.store
    oauth: ProviderClient = request.app.state.oauth

    state = await _param(request, "state")
    code = await _param(request, "code")
    provider_error = await _param(request, "error")

    try:
        if provider_error:
            raise ExchangeFailed(f"provider returned error: {provider_error}")
        if not code:
            raise ExchangeFailed("callback is missing the code parameter")
        token = await oauth.exchange(code)
    except ExchangeFailed as e:
        logger.warning("callback: exchange failed: %s", e.reason)
        _audit("exchange_failed", state=state[:8], reason=e.reason)
        return RedirectResponse("/", status_code=307)

    try:
        store.set_access_token_by_write_key(state, token.access_token)
    except StateNotFound as e:
        logger.warning("callback: %s (state=%s...)", e, state[:8])
        _audit("callback_unknown_state", state=state[:8])
        return RedirectResponse("/", status_code=307)

    _audit("token_granted", state=state[:8])
    return PlainTextResponse("Got token")


async def _token_route(request: Request) -> Response:
    """Hand out the stored access token once, then forget the key pair."""
    store: TokenStore = request.app.state.store

    read_key = await _param(request, "readKey")
    try:
        record = store.claim_by_read_key(read_key)
    except RecordNotFound as e:
        _audit("token_unavailable", read_key=read_key[:8], reason="not_found")
        return PlainTextResponse(str(e), status_code=404)
    except TokenNotReady as e:
        _audit("token_unavailable", read_key=read_key[:8], reason="not_ready")
        return PlainTextResponse(str(e), status_code=409)

    # the record is gone before the response is encoded
    _audit("token_claimed", read_key=read_key[:8], stored=len(store),
           age=round(time.time() - record.created_at, 1))
    return _json({"accessToken": record.access_token})


def create_app(oauth: ProviderClient, store: TokenStore | None = None) -> Starlette:
    methods = ["GET", "POST"]
    app = Starlette(routes=[
        Route("/", _index_route, methods=methods),
        Route("/keypair", _keypair_route, methods=methods),
        Route("/login", _login_route, methods=methods),
        Route("/token", _token_route, methods=methods),
        Route("/callback", _callback_route, methods=methods),
    ])
    app.state.store = store if store is not None else TokenStore()
    app.state.oauth = oauth
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="OAuth2 key relay server")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--env-file", type=Path, default=Path(".env"))
    parser.add_argument("--provider-config", type=Path, default=None)
    parser.add_argument("--audit-log", type=Path, default=None,
                        help="write JSON-lines audit entries to this file")
    args = parser.parse_args()

    if args.audit_log:
        args.audit_log.parent.mkdir(parents=True, exist_ok=True)
        _audit_handler = logging.FileHandler(args.audit_log)
        _audit_handler.setFormatter(logging.Formatter("%(message)s"))
        audit_logger.addHandler(_audit_handler)
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False

    client_id, client_secret = _load_env(args.env_file)
    provider = _load_provider(client_id, client_secret, args.provider_config)
    app = create_app(ProviderClient(provider))

    import uvicorn

    logger.info(f"relay: started running on http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
