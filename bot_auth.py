import asyncio
import enum
import hmac
import secrets
import urllib.parse
import webbrowser
from typing import Optional

from aiohttp import web

TWITCH_AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
AUTH_TOKEN_PATH = "/auth-token"


# -----------------------------
# Errors
# -----------------------------
class AuthError(Exception):
    pass


class CsrfMismatch(AuthError):
    def __init__(self):
        super().__init__("CSRF token mismatch detected, authentication token cannot be used.")


class ProviderDenied(AuthError):
    def __init__(self, error: str, description: str = ""):
        self.error = error
        self.description = description
        super().__init__(f"The bot was not authorised to access the account: {error} ({description})")


class AuthCancelled(AuthError):
    def __init__(self):
        super().__init__("Authorisation was cancelled before the callback arrived.")


# -----------------------------
# Session
# -----------------------------
class SessionState(enum.Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    FAILED = "failed"


class AuthSession:
    """One authorisation attempt. The CSRF token is minted here and never reused."""

    def __init__(self):
        self.csrf_token = secrets.token_hex(32)
        self.state = SessionState.PENDING
        self.token: Optional[str] = None
        self.failure: Optional[AuthError] = None
        self._result = asyncio.get_running_loop().create_future()
        # wait() re-raises the failure; this only silences the "never retrieved" warning
        self._result.add_done_callback(lambda f: f.cancelled() or f.exception())

    @property
    def resolved(self) -> bool:
        return self.state is not SessionState.PENDING

    def check_state(self, state: Optional[str]) -> bool:
        return hmac.compare_digest((state or "").encode("utf-8"), self.csrf_token.encode("utf-8"))

    def fulfil(self, token: str) -> bool:
        if self.resolved:
            return False
        self.state = SessionState.FULFILLED
        self.token = token
        self._result.set_result(token)
        return True

    def fail(self, error: AuthError) -> bool:
        if self.resolved:
            return False
        self.state = SessionState.FAILED
        self.failure = error
        self._result.set_exception(error)
        return True

    async def wait(self) -> str:
        return await self._result


# -----------------------------
# Callback listener
# -----------------------------
async def _callback_params(request: web.Request) -> dict:
    # The bridge page re-encodes the fragment as the query string and mirrors it as JSON
    params = dict(request.query)
    if request.can_read_body:
        try:
            body = await request.json()
        except ValueError:
            print("[Auth] Callback body is not JSON, using the query string only")
            body = None
        if isinstance(body, dict):
            for key, value in body.items():
                if key not in params and isinstance(value, str):
                    params[key] = value
    return params


async def _send_now(request: web.Request, resp: web.Response) -> web.Response:
    # Flush the response before the listener starts shutting down
    await resp.prepare(request)
    await resp.write_eof()
    return resp


class AuthorizationHandle:
    """
    Owns the local listener for a single session. Releasing the handle (close,
    cancel or leaving an ``async with`` block) stops the listener; a session
    that is still pending at that point fails with AuthCancelled.
    """

    def __init__(self, session: AuthSession, authorize_url: str, host: str, port: int):
        self.session = session
        self.authorize_url = authorize_url
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._closing: Optional[asyncio.Future] = None
        self._claimed = False

    @property
    def closed(self) -> bool:
        return self._closing is not None

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_default_route, allow_head=False)
        app.router.add_post(AUTH_TOKEN_PATH, self._handle_auth_token_route)
        app.router.add_route("*", "/{tail:.*}", self._handle_unknown_request)
        return app

    async def listen(self):
        self._runner = web.AppRunner(self._build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await self._runner.cleanup()
            raise
        print(f"[Auth] Callback server listening on http://{self.host}:{self.port}")

    async def wait(self) -> str:
        return await self.session.wait()

    async def cancel(self):
        await self.close()

    async def close(self):
        if self._closing is None:
            if self.session.fail(AuthCancelled()):
                print("[Auth] Authorisation cancelled")
            self._closing = asyncio.ensure_future(self._shutdown())
        await self._closing

    def _close_soon(self):
        if self._closing is None:
            self._closing = asyncio.ensure_future(self._shutdown())

    async def _shutdown(self):
        if self._runner is not None:
            print("[Auth] Stopping the callback server")
            await self._runner.cleanup()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ---- Routes ----
    async def _handle_default_route(self, request: web.Request) -> web.Response:
        print("[Auth] Sending the auth data parser page")
        return web.Response(text=AUTH_DATA_PARSE_PAGE, content_type="text/html")

    async def _handle_unknown_request(self, request: web.Request) -> web.Response:
        return web.Response(status=404, text="Error 404 - Not Found")

    async def _handle_auth_token_route(self, request: web.Request) -> web.Response:
        params = await _callback_params(request)

        # Only the first callback is ever processed; late ones never touch the session
        if self._claimed or self.session.resolved:
            return await self._handle_unknown_request(request)
        self._claimed = True
        print("[Auth] Checking auth token")

        if not self.session.check_state(params.get("state")):
            lines = [
                "Authorisation failed!",
                "CSRF Token mismatch! This could mean (but does not prove) that you may have been "
                "targeted by a remote attacker executing a CSRF",
            ]
            for line in lines:
                print(f"[Auth] {line}")
            resp = await _send_now(request, web.Response(status=500, text="\n".join(lines)))
            self.session.fail(CsrfMismatch())
            self._close_soon()
            return resp

        error = params.get("error")
        access_token = params.get("access_token")
        if error or not access_token:
            if error:
                denied = ProviderDenied(error, params.get("error_description", ""))
            else:
                denied = ProviderDenied("missing_access_token", "The callback did not include an access token")
            lines = [
                "Authorisation failed!",
                f"Error: {denied.error}",
                f"Description: {denied.description}",
            ]
            for line in lines:
                print(f"[Auth] {line}")
            resp = await _send_now(request, web.Response(status=400, text="\n".join(lines)))
            self.session.fail(denied)
            self._close_soon()
            return resp

        print(f"[Auth] Auth token looks good! (length={len(access_token)})")
        resp = await _send_now(
            request, web.Response(text="Authorisation successful, you may now close this page! 🙂")
        )
        self.session.fulfil(access_token)
        self._close_soon()
        return resp


# -----------------------------
# Gateway
# -----------------------------
class AuthGateway:
    """
    Implicit-grant login: the provider hands the token back in the URL fragment,
    so the root route serves a bridge page that POSTs it to /auth-token.
    """

    def __init__(
        self,
        client_id: str,
        callback_url: str,
        scopes: str,
        authorize_url: str = TWITCH_AUTHORIZE_URL,
        force_verify: bool = False,
        open_browser=webbrowser.open,
    ):
        self.client_id = client_id
        self.callback_url = callback_url
        self.scopes = scopes
        self.authorize_url = authorize_url
        self.force_verify = force_verify
        self.open_browser = open_browser
        self._handle: Optional[AuthorizationHandle] = None

    def listen_address(self) -> tuple:
        parsed = urllib.parse.urlsplit(self.callback_url)
        if not parsed.hostname:
            raise ValueError(f"Callback URL has no host: {self.callback_url!r}")
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
        return parsed.hostname, port

    def build_authorize_url(self, csrf_token: str) -> str:
        params = {
            "client_id": self.client_id,
            "force_verify": "true" if self.force_verify else "false",
            "redirect_uri": self.callback_url,
            "response_type": "token",
            "scope": self.scopes,
            "state": csrf_token,
        }
        return self.authorize_url + "?" + urllib.parse.urlencode(params, quote_via=urllib.parse.quote)

    async def start(self) -> AuthorizationHandle:
        if self._handle is not None and not self._handle.closed:
            raise RuntimeError("An authorisation attempt is already listening")

        host, port = self.listen_address()
        session = AuthSession()
        handle = AuthorizationHandle(session, self.build_authorize_url(session.csrf_token), host, port)

        print("[Auth] Starting the auth callback server")
        await handle.listen()
        self._handle = handle

        print(f"[Auth] Open this link in your browser if it does not open automatically:\n{handle.authorize_url}")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.open_browser, handle.authorize_url)
        except BaseException:
            await handle.close()
            raise
        return handle

    async def get_bearer_token(self) -> str:
        handle = await self.start()
        async with handle:
            return await handle.wait()


AUTH_DATA_PARSE_PAGE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Auth token received - transferring to the bot!</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
</head>
<body>
  <h1>Auth token received</h1>
  <p>Transferring token to the bot!</p>
  <p id="msg"></p>
  <p id="error"></p>
  <script>
    const url = new URL(window.location);
    // Errors come back in the query string, tokens in the fragment
    const params = new URLSearchParams(url.search);
    new URLSearchParams(url.hash.substring(1)).forEach((v, k) => params.set(k, v));
    const body = {};
    params.forEach((v, k) => { body[k] = v; });

    fetch(url.origin + '/auth-token?' + params.toString(), {
      method: 'POST',
      headers: { 'Content-Type': 'application/json' },
      body: JSON.stringify(body),
    })
      .then(r => r.text())
      .then(t => { document.getElementById('msg').innerText = t; })
      .catch(error => {
        document.getElementById('msg').innerText = 'Unable to send the auth token to the bot!';
        document.getElementById('error').innerText = String(error);
      });
  </script>
</body>
</html>
"""
