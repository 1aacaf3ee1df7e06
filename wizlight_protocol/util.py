#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package
"""

from __future__ import annotations

import netifaces
import random
import socket
from ipaddress import IPv4Address, IPv4Network

from wizlight_protocol.internal_types import *

def get_local_ip_addresses_and_interfaces(
        address_family: Union[socket.AddressFamily, int]=socket.AF_INET,
        include_loopback: bool=True
    ) -> List[Tuple[str, str]]:
    """Returns a list of Tuple[ip_address: str, interface_name: str] for the IP addresses of the local host
       in a requested address family. The result is sorted in a way that attempts to place the "preferred"
       canonical IP address first in the list, according to the following scheme:
           1. Addresses on the default gateway interface precede all other addresses.
           2. Non-loopback addresses precede loopback addresses.
           3. IPV4 addresses that begin with 172. follow other IPV4 addresses. This is a hack to
              deprioritize local docker network addresses.
    """
    result_with_priority: List[Tuple[int, str, str]] = []
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    is_ipv6 = int(address_family) == int(socket.AF_INET6)
    _, default_gateway_ifname = get_default_ip_gateway(address_family)
    netiface_family = netifaces.AF_INET6 if is_ipv6 else netifaces.AF_INET
    for ifname in netifaces.interfaces():
        ifinfo = netifaces.ifaddresses(ifname)
        if netiface_family in ifinfo:
            for addrinfo in ifinfo[netiface_family]:
                ip_str = addrinfo['addr']
                assert isinstance(ip_str, str)
                if is_ipv6:
                    # strip any "%ifname" scope suffix
                    ip_str = ip_str.split('%', 1)[0]
                is_loopback = ip_str == '::1' if is_ipv6 else IPv4Address(ip_str).is_loopback
                if is_loopback:
                    if not include_loopback:
                        continue
                    priority = 3
                elif ifname == default_gateway_ifname:
                    priority = 0
                elif not is_ipv6 and ip_str.startswith('172.'):
                    priority = 2
                else:
                    priority = 1

                result_with_priority.append((priority, ip_str, ifname))
    return [ (ip, ifname) for _, ip, ifname in sorted(result_with_priority)]

def get_local_ip_addresses(address_family: Union[socket.AddressFamily, int]=socket.AF_INET, include_loopback: bool=True) -> List[str]:
    """Returns a List[ip_address: str] for the IP addresses of the local host
       in a requested address family, in the order described in get_local_ip_addresses_and_interfaces()."""
    return [ ip for ip, _ in get_local_ip_addresses_and_interfaces(address_family, include_loopback=include_loopback)]

def get_default_ip_gateway(address_family: Union[socket.AddressFamily, int]=socket.AF_INET) -> Tuple[Optional[str], Optional[str]]:
    """Returns the (gateway_ip_address: str, gateway_interface_name: str) for the default IP gateway in the
       requested family, if any.
       returns (None, None) if there is no default gateway in the requested family."""
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    netiface_family = netifaces.AF_INET if int(address_family) == int(socket.AF_INET) else netifaces.AF_INET6
    gws = netifaces.gateways()
    if "default" in gws:
        default_gateway_infos = gws["default"]
        if netiface_family in default_gateway_infos:
            gw_ip, gw_interface_name = default_gateway_infos[netiface_family][:2]
            return (gw_ip, gw_interface_name)
    return (None, None)

def select_source_ip(target_ip: str, candidates: Optional[Iterable[str]]=None) -> Optional[str]:
    """Chooses the local IPv4 address a device at target_ip should use to reach this host.

       Prefers a candidate in the same /24 as target_ip; otherwise returns the first non-loopback
       candidate. If candidates is None, the local host's IPv4 addresses are enumerated.
       Returns None if no usable address exists.
    """
    if candidates is None:
        candidates = get_local_ip_addresses(socket.AF_INET, include_loopback=False)
    usable = [ ip for ip in candidates if not IPv4Address(ip).is_loopback ]
    try:
        target_net = IPv4Network(f"{target_ip}/24", strict=False)
    except ValueError:
        target_net = None
    if not target_net is None:
        for ip in usable:
            if IPv4Address(ip) in target_net:
                return ip
    if len(usable) > 0:
        return usable[0]
    return None

def generate_phone_mac() -> str:
    """Returns a random 12-digit lowercase hex identifier to present to devices as our MAC."""
    return ''.join(random.choice('0123456789abcdef') for _ in range(12))

def normalize_mac(mac: str) -> str:
    """Lowercases a MAC address and removes any ':' or '-' separators."""
    return mac.replace(':', '').replace('-', '').lower()
