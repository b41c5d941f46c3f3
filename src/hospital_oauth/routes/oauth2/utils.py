"""
OAuth2 HTTP helpers.

Request-side utilities used only by the route layer: HTTP Basic client
credentials, tenant resolution from headers, body parsing for form and
JSON requests, and redirect URL construction.
"""

import base64
import binascii
import ipaddress
import json
from typing import Dict, List, Mapping, Optional, Type, TypeVar
from urllib.parse import unquote_plus, urlencode

from fastapi import Request
from pydantic import BaseModel, ValidationError
from starlette.formparsers import MultiPartException

from hospital_oauth.managers.logging_manager import get_logger

from .error_handler import invalid_request_error
from .models import ClientCredentials

logger = get_logger(prefix="[OAuth2 Utils]")

M = TypeVar("M", bound=BaseModel)


def parse_basic_authorization(header: Optional[str]) -> Optional[ClientCredentials]:
    """
    Decode HTTP Basic client credentials (RFC 6749 section 2.3.1).

    The client id and secret are form-urlencoded before being joined with
    ``:`` and base64-encoded, so both parts are URL-decoded here.

    Returns:
        ClientCredentials, or None when the header is absent or uses another scheme

    Raises:
        OAuth2Exception: ``invalid_request`` if the Basic credentials are malformed
    """
    if not header:
        return None
    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise invalid_request_error("Malformed HTTP Basic credentials")
    client_id, separator, client_secret = decoded.partition(":")
    if not separator or not client_id:
        raise invalid_request_error("Malformed HTTP Basic credentials")
    return ClientCredentials(client_id=unquote_plus(client_id), client_secret=unquote_plus(client_secret))


def subdomain_from_host(
    host: Optional[str], reserved_subdomains: List[str], base_domain: Optional[str] = None
) -> Optional[str]:
    """
    Tenant label of ``host`` under the service's base domain.

    With base domain ``auth.example.com``, ``hospital-a.auth.example.com``
    gives ``hospital-a``. The base domain itself, nested labels
    (``a.b.auth.example.com``), other domains, IP addresses and reserved
    labels (``www``, ``api``) give None. Without a base domain the Host
    header never names a tenant.
    """
    if not host or not base_domain:
        return None
    hostname = host.strip().lower()
    if hostname.startswith("["):
        return None
    hostname = hostname.rsplit(":", 1)[0].rstrip(".")
    try:
        ipaddress.ip_address(hostname)
        return None
    except ValueError:
        pass
    suffix = "." + base_domain.strip().lower().strip(".")
    if not hostname.endswith(suffix):
        return None
    label = hostname[: -len(suffix)]
    if not label or "." in label or label in reserved_subdomains:
        return None
    return label


def resolve_organization_id(
    headers: Mapping[str, str],
    header_name: str = "X-Organization-Id",
    reserved_subdomains: Optional[List[str]] = None,
    base_domain: Optional[str] = None,
) -> str:
    """
    Resolve the tenant of a request.

    The explicit organization header wins; otherwise the subdomain of the
    ``Host`` header is used when it sits directly under ``base_domain``.

    Raises:
        OAuth2Exception: ``invalid_request`` when no organization can be resolved
    """
    organization_id = (headers.get(header_name) or "").strip()
    if organization_id:
        return organization_id
    organization_id = subdomain_from_host(headers.get("host"), reserved_subdomains or ["www", "api"], base_domain)
    if organization_id:
        return organization_id
    raise invalid_request_error("Unable to resolve the organization for this request")


async def parse_request_body(request: Request, model: Type[M]) -> M:
    """
    Parse a form-urlencoded or JSON request body into ``model``.

    Raises:
        OAuth2Exception: ``invalid_request`` for malformed bodies, repeated
            parameters or values of the wrong type
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    try:
        if content_type == "application/json":
            raw = await request.body()
            data = json.loads(raw) if raw.strip() else {}
            if not isinstance(data, dict):
                raise invalid_request_error("Request body must be a JSON object")
        else:
            data = await _form_to_dict(request)
    except (ValueError, UnicodeDecodeError, MultiPartException) as e:
        logger.debug(f"Malformed request body ({content_type or 'no content type'}): {e}")
        raise invalid_request_error("Malformed request body")

    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise invalid_request_error(f"Invalid request parameters: {fields}" if fields else "Invalid request parameters")


async def _form_to_dict(request: Request) -> Dict[str, str]:
    form = await request.form()
    data: Dict[str, str] = {}
    for key in form.keys():
        values = form.getlist(key)
        # RFC 6749 section 3.2: parameters must not be included more than once
        if len(values) > 1:
            raise invalid_request_error(f"Parameter '{key}' is repeated")
        value = values[0]
        if not isinstance(value, str):
            raise invalid_request_error(f"Parameter '{key}' must be a string")
        data[key] = value
    return data


def build_redirect_url(redirect_uri: str, params: Dict[str, Optional[str]]) -> str:
    """Append query parameters to a redirect URI, dropping empty ones."""
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in redirect_uri else "?"
    return f"{redirect_uri}{separator}{query}"
