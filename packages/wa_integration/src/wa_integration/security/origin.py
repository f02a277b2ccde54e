"""
Webhook origin checks.

Resolves the client address of a webhook request and matches it against the
configured allow-list (exact addresses, localhost alias, CIDR ranges and
`*` wildcards).
"""

import ipaddress
import logging
import re
from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

# Consulted in order; the first one present wins.
FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip")

LOCALHOST_ALIAS = "localhost"
IPV4_MAPPED_PREFIX = "::ffff:"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def normalize_address(value: str | None) -> IPAddress | None:
    """Parse an address, stripping ports, brackets and the IPv4-mapped prefix."""
    if not value:
        return None
    value = value.strip().strip("[]")
    if value.lower().startswith(IPV4_MAPPED_PREFIX):
        value = value[len(IPV4_MAPPED_PREFIX):]
    # "1.2.3.4:5678"
    if value.count(":") == 1 and "." in value:
        value = value.split(":", 1)[0]
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        return None


def resolve_client_address(
    headers: Mapping[str, str],
    peer: str | None,
) -> IPAddress | None:
    """
    Determine the client address of a request.

    Uses the first hop of X-Forwarded-For, then X-Real-IP, then the socket
    peer. A header that is present but unparseable yields None (fail closed).
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    for header in FORWARDING_HEADERS:
        raw = lowered.get(header)
        if raw:
            return normalize_address(raw.split(",")[0])
    return normalize_address(peer)


class OriginAllowList:
    """
    Allow-list of webhook source addresses.

    Entries:
    - "localhost": any loopback address
    - "10.0.0.0/8": CIDR ranges
    - "192.168.*.*": wildcard patterns over the textual address
    - "127.0.0.1": exact addresses

    An empty list allows nothing; use "*" to disable the origin check.
    """

    def __init__(self, entries: Iterable[str]):
        self.entries = [entry.strip() for entry in entries if entry and entry.strip()]
        self._allow_loopback = False
        self._addresses: set[IPAddress] = set()
        self._networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        self._patterns: list[re.Pattern[str]] = []

        for entry in self.entries:
            if entry.lower() == LOCALHOST_ALIAS:
                self._allow_loopback = True
            elif "*" in entry:
                pattern = re.escape(entry).replace(r"\*", ".*")
                self._patterns.append(re.compile(f"^{pattern}$"))
            elif "/" in entry:
                try:
                    self._networks.append(ipaddress.ip_network(entry, strict=False))
                except ValueError:
                    logger.warning(f"Ignoring invalid network in webhook allow-list: {entry}")
            else:
                address = normalize_address(entry)
                if address is None:
                    # Hostnames are never resolved
                    logger.debug(f"Ignoring non-address webhook allow-list entry: {entry}")
                    continue
                self._addresses.add(address)

    def allows(self, address: IPAddress | None) -> bool:
        """Check an address against the list. Unknown addresses are rejected."""
        if address is None:
            return False
        if self._allow_loopback and address.is_loopback:
            return True
        if address in self._addresses:
            return True
        if any(address in network for network in self._networks):
            return True
        text = str(address)
        return any(pattern.match(text) for pattern in self._patterns)
