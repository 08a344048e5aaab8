"""Outbound address classification for webhook delivery."""

from __future__ import annotations

import ipaddress
from typing import Callable, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_RFC1918 = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
)
_IPV4_LINK_LOCAL = ipaddress.ip_network("169.254.0.0/16")
_CARRIER_GRADE_NAT = ipaddress.ip_network("100.64.0.0/10")
_IPV6_UNIQUE_LOCAL = ipaddress.ip_network("fc00::/7")
_IPV6_LINK_LOCAL = ipaddress.ip_network("fe80::/10")
_IPV6_SITE_LOCAL = ipaddress.ip_network("fec0::/10")


def is_unspecified(ip: IPAddress) -> bool:
    return ip.is_unspecified


def is_loopback(ip: IPAddress) -> bool:
    return ip.is_loopback


def is_multicast(ip: IPAddress) -> bool:
    return ip.is_multicast


def is_rfc1918_private(ip: IPAddress) -> bool:
    return ip.version == 4 and any(ip in network for network in _RFC1918)


def is_ipv4_link_local(ip: IPAddress) -> bool:
    # Includes the cloud metadata endpoint 169.254.169.254.
    return ip.version == 4 and ip in _IPV4_LINK_LOCAL


def is_carrier_grade_nat(ip: IPAddress) -> bool:
    return ip.version == 4 and ip in _CARRIER_GRADE_NAT


def is_ipv6_unique_local(ip: IPAddress) -> bool:
    return ip.version == 6 and ip in _IPV6_UNIQUE_LOCAL


def is_ipv6_link_local(ip: IPAddress) -> bool:
    return ip.version == 6 and ip in _IPV6_LINK_LOCAL


def is_ipv6_site_local(ip: IPAddress) -> bool:
    return ip.version == 6 and ip in _IPV6_SITE_LOCAL


UNSAFE_PREDICATES: tuple[Callable[[IPAddress], bool], ...] = (
    is_unspecified,
    is_loopback,
    is_multicast,
    is_rfc1918_private,
    is_ipv4_link_local,
    is_carrier_grade_nat,
    is_ipv6_unique_local,
    is_ipv6_link_local,
    is_ipv6_site_local,
)


def is_safe_ip(ip: Union[IPAddress, str]) -> bool:
    """
    Return True when `ip` may be contacted by outbound webhook requests.

    IPv4-mapped IPv6 addresses (::ffff:a.b.c.d) are unwrapped and classified
    as the IPv4 address they carry.
    """
    address = ipaddress.ip_address(ip) if isinstance(ip, str) else ip
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return is_safe_ip(address.ipv4_mapped)
    return not any(predicate(address) for predicate in UNSAFE_PREDICATES)
