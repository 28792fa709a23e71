"""
MODULE OVERVIEW:
Figures out which authentication the device wants and builds a request
function that speaks it.

WHAT IS HAPPENING HERE:
Older whatwatt firmware protects its API with Basic auth, 1.10+ with Digest,
and an unprotected device with nothing at all. Instead of asking the user, we
send one unauthenticated GET to a stable endpoint and read the
`WWW-Authenticate` challenge. The answer is cached by the caller; this module
keeps no state.

Every request function returned here has the calling convention of
`httpx.AsyncClient.stream(method, url, **kwargs)`: an async context manager
yielding a streaming response.
"""
import functools
from typing import AsyncContextManager, Callable

import httpx
from loguru import logger

from whatwatt_live.shared.config import PROBE_PATH
from whatwatt_live.shared.models import AuthScheme, ConnectionConfig

RequestFn = Callable[..., AsyncContextManager[httpx.Response]]


def scheme_from_challenge(header: str | None) -> AuthScheme:
    """Map a `WWW-Authenticate` value to a scheme; unknown or missing means Digest."""
    tokens = (header or "").split()
    if tokens and tokens[0].lower() == "basic":
        return AuthScheme.BASIC
    return AuthScheme.DIGEST


async def detect_auth_scheme(client: httpx.AsyncClient, base_url: str, timeout: float) -> AuthScheme:
    """Probe the device once without credentials.

    Transport failures (refused, DNS, timeout) propagate as httpx errors.
    """
    url = f"{base_url}{PROBE_PATH}"
    response = await client.get(url, headers={"Accept": "application/json"}, timeout=timeout)

    if response.is_success:
        scheme = AuthScheme.NONE
    elif response.status_code == 401:
        scheme = scheme_from_challenge(response.headers.get("www-authenticate"))
    else:
        scheme = AuthScheme.DIGEST

    logger.debug(f"url={url} status={response.status_code} event=auth_probe scheme={scheme.value}")
    return scheme


def create_authenticated_request(
    client: httpx.AsyncClient,
    username: str,
    password: str,
    scheme: AuthScheme,
) -> RequestFn:
    if scheme == AuthScheme.NONE:
        raise ValueError("No credentials are attached for auth scheme 'none'")

    # whatwatt devices only check the password; the user name is sent empty
    if scheme == AuthScheme.BASIC:
        auth: httpx.Auth = httpx.BasicAuth(username or "", password)
    else:
        auth = httpx.DigestAuth(username or "", password)
    return functools.partial(client.stream, auth=auth)


async def resolve_scheme(client: httpx.AsyncClient, config: ConnectionConfig) -> AuthScheme:
    if not config.password:
        return AuthScheme.NONE
    if config.auth_scheme != "auto":
        return AuthScheme(config.auth_scheme)
    return await detect_auth_scheme(client, config.base_url, config.timeout)


def request_for(client: httpx.AsyncClient, config: ConnectionConfig, scheme: AuthScheme) -> RequestFn:
    if scheme == AuthScheme.NONE:
        return client.stream
    return create_authenticated_request(client, config.username, config.password, scheme)
