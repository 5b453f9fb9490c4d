"""
auth/whitelist.py -- Which source addresses may assert identity via headers.

Whitelist format: comma-separated literal IPv4/IPv6 addresses and CIDR
ranges, e.g. "172.19.0.0/16, 10.0.0.5, fd00::/8". A list of such strings is
accepted too (the stored form of older configurations).

Parsing rules:
  - Each entry parses independently. An unparsable entry is logged and
    skipped; the remaining entries keep working.
  - CIDR ranges with host bits set ("10.0.0.5/8") are accepted as the
    enclosing network.
  - An empty whitelist, or one where every entry is invalid, trusts nobody
    (fail-closed).

Normalization rule (the only one): an IPv4-mapped IPv6 address
("::ffff:172.19.5.5") is treated as the IPv4 address it maps. Dual-stack
listeners report IPv4 peers in that form; whitelist entries written in it are
normalized the same way so "::ffff:10.0.0.5" and "10.0.0.5" are equivalent
on both sides. A mapped range with a prefix of /96 or longer becomes the IPv4
range it covers ("::ffff:172.19.0.0/112" is "172.19.0.0/16"). No other
representation is rewritten.

Parsed whitelists are memoized by their exact text. The resolver hands in the
current configuration string on every request, so an edited whitelist is a
new cache key and takes effect immediately; the memo only saves re-parsing
(and re-logging invalid entries for) the same text.

Grounded on stdlib ipaddress, the way the server's localhost trust check
parses peer addresses.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger("homeboard.auth.whitelist")

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True)
class ParsedWhitelist:
    networks: tuple[IPNetwork, ...]
    invalid: tuple[str, ...]

    def __bool__(self) -> bool:
        return bool(self.networks)


def normalize_address(value: str | None) -> IPAddress | None:
    """Parse a peer address, unwrapping IPv4-mapped IPv6. None if unparsable."""
    if not value:
        return None
    try:
        addr = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def split_entries(whitelist: str | Iterable[str] | None) -> tuple[str, ...]:
    """Flatten a whitelist value into stripped, non-empty entries."""
    if not whitelist:
        return ()
    chunks = [whitelist] if isinstance(whitelist, str) else list(whitelist)
    entries: list[str] = []
    for chunk in chunks:
        entries.extend(e.strip() for e in str(chunk).split(","))
    return tuple(e for e in entries if e)


def _parse_entry(entry: str) -> IPNetwork:
    if "/" in entry:
        network = ipaddress.ip_network(entry, strict=False)
        mapped = network.network_address.ipv4_mapped if isinstance(network, ipaddress.IPv6Network) else None
        if mapped is not None and network.prefixlen >= 96:
            return ipaddress.IPv4Network((mapped, network.prefixlen - 96))
        return network
    addr = normalize_address(entry)
    if addr is None:
        raise ValueError(f"not an IP address or CIDR range: {entry!r}")
    return ipaddress.ip_network(addr)


@lru_cache(maxsize=64)
def _parse_entries(entries: tuple[str, ...]) -> ParsedWhitelist:
    networks: list[IPNetwork] = []
    invalid: list[str] = []
    for entry in entries:
        try:
            networks.append(_parse_entry(entry))
        except ValueError as exc:
            logger.warning("Ignoring invalid proxy whitelist entry %r: %s", entry, exc)
            invalid.append(entry)
    return ParsedWhitelist(networks=tuple(networks), invalid=tuple(invalid))


def parse_whitelist(whitelist: str | Iterable[str] | None) -> ParsedWhitelist:
    return _parse_entries(split_entries(whitelist))


class WhitelistMatcher:
    """Answer "may this source address assert identity via headers?"

    Usage:
        matcher = WhitelistMatcher()
        matcher.is_trusted("172.19.5.5", "172.19.0.0/16")   # True
        matcher.is_trusted("10.0.0.5", "172.19.0.0/16")     # False
        matcher.is_trusted("10.0.0.5", "")                  # False (fail-closed)
    """

    def is_trusted(self, source_address: str | None, whitelist: str | Iterable[str] | None) -> bool:
        parsed = parse_whitelist(whitelist)
        if not parsed:
            return False
        addr = normalize_address(source_address)
        if addr is None:
            logger.warning("Unparsable source address %r treated as untrusted", source_address)
            return False
        # Membership across IP versions is simply False.
        return any(addr in network for network in parsed.networks)

    def invalid_entries(self, whitelist: str | Iterable[str] | None) -> list[str]:
        """Entries that failed to parse, for the admin settings response."""
        return list(parse_whitelist(whitelist).invalid)
