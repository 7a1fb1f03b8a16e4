"""
Request Context Extraction.

Builds the per-request signal bundle consumed by the device registry, the
risk engine and the threat detector:
- Client address normalization (forwarding headers, IPv4-mapped IPv6)
- User agent parsing
- Header presence flags
- Optional geolocation
"""

from __future__ import annotations

import ipaddress
import time
from typing import Callable, Optional

import structlog

from warden.capabilities.geolocation import GeoLocator, NullGeoLocator, resolve_location
from warden.context.user_agent import UserAgentParser
from warden.types import HeaderPresence, RawRequest, RequestContext

logger = structlog.get_logger()

LOOPBACK = "127.0.0.1"


def normalize_address(raw: Optional[str]) -> str:
    """
    Normalize a client address.

    IPv4-mapped IPv6 addresses are reduced to IPv4. IPv6 loopback, empty and
    unparseable values map to 127.0.0.1.
    """
    if not raw:
        return LOOPBACK

    candidate = raw.strip()
    # Drop a port or IPv6 zone if present
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1:candidate.index("]")]
    elif candidate.count(":") == 1:
        candidate = candidate.split(":", 1)[0]
    candidate = candidate.split("%", 1)[0]

    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return LOOPBACK

    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
        if ip.is_loopback:
            return LOOPBACK
    return str(ip)


class ContextExtractor:
    """
    Turns a RawRequest into a RequestContext.

    Extraction never fails: every signal that cannot be read is replaced by
    an explicit default and noted in RequestContext.signal_defaults.
    """

    def __init__(
        self,
        geolocator: Optional[GeoLocator] = None,
        trust_forwarded_headers: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.geolocator = geolocator if geolocator is not None else NullGeoLocator()
        self.trust_forwarded_headers = trust_forwarded_headers
        self._clock = clock
        self._parser = UserAgentParser()
        self._logger = logger.bind(component="context_extractor")

    def client_address(self, request: RawRequest) -> str:
        """Left-most forwarded address, then X-Real-IP, then the peer."""
        if self.trust_forwarded_headers:
            forwarded = request.header("x-forwarded-for")
            if forwarded:
                return normalize_address(forwarded.split(",")[0])

            real_ip = request.header("x-real-ip")
            if real_ip:
                return normalize_address(real_ip)

        return normalize_address(request.peer_address)

    async def extract(self, request: RawRequest) -> RequestContext:
        defaults: list[str] = []

        address = self.client_address(request)
        if address == LOOPBACK and not request.peer_address:
            defaults.append("address")

        user_agent = request.header("user-agent")
        if not user_agent:
            defaults.append("user_agent")
        traits = self._parser.parse(user_agent)

        headers = HeaderPresence(
            accept_language=request.has_header("accept-language"),
            accept_encoding=request.has_header("accept-encoding"),
            connection=request.has_header("connection"),
            host=request.has_header("host"),
            dnt=request.has_header("dnt"),
            upgrade_insecure_requests=request.has_header("upgrade-insecure-requests"),
        )
        defaults.extend(f"header:{name}" for name in headers.missing())

        location = await resolve_location(self.geolocator, address)
        if location is None:
            defaults.append("location")

        context = RequestContext(
            request_id=request.request_id,
            address=address,
            user_agent=user_agent,
            traits=traits,
            headers=headers,
            accept_language=request.header("accept-language"),
            accept_encoding=request.header("accept-encoding"),
            connection=request.header("connection"),
            location=location,
            timestamp=request.timestamp if request.timestamp is not None else self._clock(),
            path=request.path or "/",
            method=(request.method or "GET").upper(),
            is_secure=request.is_secure,
            session_id=request.session_id,
            signal_defaults=defaults,
        )

        self._logger.debug(
            "Request context extracted",
            request_id=context.request_id,
            address=address,
            device_class=traits.device_class.value,
            defaults=len(defaults),
        )

        return context
