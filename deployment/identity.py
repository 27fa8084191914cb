"""
Client identity resolution

The routing core only ever sees an opaque client id string. This module turns
the identity material a request carries into that string:

1. authenticated user id (stable across devices)
2. client id cookie value
3. hash of IP address + User-Agent as a last resort

Each source gets its own prefix so a user id can never collide with a cookie
value or a fallback hash.
"""
from dataclasses import dataclass
from typing import Optional
import hashlib
import uuid

from .exceptions import InvalidInput


@dataclass(frozen=True)
class IdentitySource:
    """Identity material extracted from one request"""
    user_id: Optional[str] = None
    cookie_value: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _fingerprint(ip_address: Optional[str], user_agent: Optional[str]) -> str:
    material = f"{ip_address or ''}|{user_agent or ''}".encode('utf-8')
    return hashlib.sha256(material).hexdigest()[:32]


def fallback_client_id(ip_address: Optional[str], user_agent: Optional[str]) -> str:
    """Hash IP + User-Agent into an anonymous client id"""
    if not ip_address and not user_agent:
        raise InvalidInput("No IP address or User-Agent to derive a client id from")

    return f"anon:{_fingerprint(ip_address, user_agent)}"


def mint_client_cookie(ip_address: Optional[str], user_agent: Optional[str]) -> str:
    """
    Value for a new client id cookie

    Derived from IP + User-Agent, so a client that drops cookies is minted
    the same value again and keeps its bucket. Random when there is nothing
    to derive it from.
    """
    if not ip_address and not user_agent:
        return uuid.uuid4().hex
    return _fingerprint(ip_address, user_agent)


def resolve_client_id(source: IdentitySource) -> str:
    """
    Resolve the client id for a request

    Raises:
        InvalidInput: If the request carries no usable identity material
    """
    user_id = (source.user_id or "").strip()
    if user_id:
        return f"user:{user_id}"

    cookie_value = (source.cookie_value or "").strip()
    if cookie_value:
        return f"cookie:{cookie_value}"

    return fallback_client_id(source.ip_address, source.user_agent)
