"""
Password log-on against the SOAP Auth service, yielding the session cookie
that the REST API expects on every request.
"""

import logging
from typing import Optional
from xml.sax.saxutils import escape

import httpx

from .config import TransportConfig
from .errors import AuthenticationError, classify_httpx_error
from .jobs import AUTH_COOKIE_NAME

AUTH_SERVICE_FORMAT = "https://{server}/Panopto/PublicAPI/4.2/Auth.svc"
SOAP_ACTION = "http://tempuri.org/IAuth/LogOnWithPassword"

_ENVELOPE = (
    '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"><s:Body>'
    '<LogOnWithPassword xmlns="http://tempuri.org/">'
    "<userKey>{user}</userKey><password>{password}</password>"
    "</LogOnWithPassword></s:Body></s:Envelope>"
)


def logon_and_get_cookie(
    server_dns: str,
    username: str,
    password: str,
    transport_config: TransportConfig = TransportConfig(),
    logger: Optional[logging.Logger] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> str:
    """Log on with a user key and password; return the auth cookie value."""
    logger = logger or logging.getLogger("session_uploader")
    url = AUTH_SERVICE_FORMAT.format(server=server_dns)
    body = _ENVELOPE.format(user=escape(username), password=escape(password))

    with httpx.Client(
        verify=transport_config.verify_tls,
        timeout=httpx.Timeout(transport_config.read_timeout, connect=transport_config.connect_timeout),
        transport=transport,
    ) as client:
        try:
            resp = client.post(
                url,
                content=body.encode("utf-8"),
                headers={
                    "SOAPAction": SOAP_ACTION,
                    "Content-Type": "text/xml; charset=utf-8",
                },
            )
        except httpx.TransportError as exc:
            raise classify_httpx_error(exc, f"POST {url}") from exc

    cookie = resp.cookies.get(AUTH_COOKIE_NAME)
    if not cookie:
        raise AuthenticationError(
            f"Invalid credentials for user {username} on server {server_dns} (HTTP {resp.status_code})."
        )
    logger.debug(f"Logged on to {server_dns} as {username}")
    return cookie
