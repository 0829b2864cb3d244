"""
Client IP resolution behind the kiosk's reverse proxy.

The school's deployment sits behind Cloudflare, which reports the visitor in
CF-Connecting-IP and X-Forwarded-For. Those headers are only believed when
the TCP peer is itself a trusted proxy: a Cloudflare edge address or one of
the networks listed in TRUSTED_PROXIES. Any other caller is keyed on its own
address, whatever headers it sends.
"""

import ipaddress

from flask import current_app, request


CLOUDFLARE_IPV4_RANGES = [
    '173.245.48.0/20', '103.21.244.0/22', '103.22.200.0/22', '103.31.4.0/22',
    '141.101.64.0/18', '108.162.192.0/18', '190.93.240.0/20', '188.114.96.0/20',
    '197.234.240.0/22', '198.41.128.0/17', '162.158.0.0/15', '104.16.0.0/13',
    '104.24.0.0/14', '172.64.0.0/13', '131.0.72.0/22'
]

CLOUDFLARE_IPV6_RANGES = [
    '2400:cb00::/32', '2606:4700::/32', '2803:f800::/32', '2405:b500::/32',
    '2405:8100::/32', '2a06:98c0::/29', '2c0f:f248::/32'
]

CLOUDFLARE_NETWORKS = [
    ipaddress.ip_network(cidr) for cidr in CLOUDFLARE_IPV4_RANGES + CLOUDFLARE_IPV6_RANGES
]


def _parse_networks(cidrs):
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            current_app.logger.warning(f"Ignoring invalid TRUSTED_PROXIES entry: {cidr!r}")
    return networks


def _parse_ip(value):
    if not value:
        return None
    try:
        return ipaddress.ip_address(value.strip())
    except ValueError:
        return None


def trusted_proxy_networks():
    """Cloudflare's edge plus any locally configured proxy networks."""
    extra = current_app.config.get("TRUSTED_PROXIES") or []
    return CLOUDFLARE_NETWORKS + _parse_networks(extra)


def is_trusted_proxy(ip_str):
    ip = _parse_ip(ip_str)
    if ip is None:
        return False
    return any(ip in network for network in trusted_proxy_networks())


def get_real_ip():
    """
    Get the client IP address for this request.

    When the peer is a trusted proxy:
    1. CF-Connecting-IP, set by Cloudflare to the visitor's address
    2. The last X-Forwarded-For hop, the one the proxy appended itself

    Otherwise, and whenever those headers are missing or malformed, the
    peer address (request.remote_addr) is used.

    Returns:
        str: The client's IP address
    """
    peer = request.remote_addr
    if not is_trusted_proxy(peer):
        return peer

    connecting_ip = _parse_ip(request.headers.get('CF-Connecting-IP'))
    if connecting_ip is not None:
        return str(connecting_ip)

    forwarded_for = request.headers.get('X-Forwarded-For')
    if forwarded_for:
        # "client, proxy1, proxy2": earlier hops are whatever the client sent
        last_hop = _parse_ip(forwarded_for.split(',')[-1])
        if last_hop is not None:
            return str(last_hop)

    return peer
