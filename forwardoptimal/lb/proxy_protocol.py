"""PROXY protocol header encoding (v1 text, v2 binary).

Addresses are ``(host, port)`` pairs as returned by ``getpeername()``; any
extra IPv6 fields (flowinfo, scope id) are ignored.
"""
import enum
import ipaddress
import struct

from forwardoptimal.errors import ProxyHeaderError

V2_SIGNATURE = b"\r\n\r\n\x00\r\nQUIT\n"
V2_VERSION_COMMAND = 0x21  # version 2, PROXY
V2_FAMILY_TCP4 = 0x11
V2_FAMILY_TCP6 = 0x21


def _ip(host):
    # scoped link-local addresses arrive as "fe80::1%eth0"
    host = str(host).split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise ProxyHeaderError(f"not an IP address: {host!r}") from None
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _port(port):
    port = int(port)
    if not 0 <= port <= 0xFFFF:
        raise ProxyHeaderError(f"port out of range: {port}")
    return port


def _endpoints(client, target):
    client_ip, target_ip = _ip(client[0]), _ip(target[0])
    ipv6 = client_ip.version == 6 or target_ip.version == 6
    if ipv6:
        client_ip, target_ip = _as_ipv6(client_ip), _as_ipv6(target_ip)
    return ipv6, client_ip, target_ip, _port(client[1]), _port(target[1])


def _as_ipv6(ip):
    if ip.version == 4:
        return ipaddress.IPv6Address(f"::ffff:{ip}")
    return ip


def encode_v1(client, target):
    ipv6, client_ip, target_ip, client_port, target_port = _endpoints(client, target)
    family = "TCP6" if ipv6 else "TCP4"
    line = f"PROXY {family} {client_ip} {target_ip} {client_port} {target_port}\r\n"
    return line.encode("ascii")


def encode_v2(client, target):
    ipv6, client_ip, target_ip, client_port, target_port = _endpoints(client, target)
    if ipv6:
        family, length = V2_FAMILY_TCP6, 36
    else:
        family, length = V2_FAMILY_TCP4, 12
    return (
        V2_SIGNATURE
        + struct.pack("!BBH", V2_VERSION_COMMAND, family, length)
        + client_ip.packed
        + target_ip.packed
        + struct.pack("!HH", client_port, target_port)
    )


class ProxyProtocol(enum.Enum):
    NONE = "disabled"
    V1 = "v1"
    V2 = "v2"

    @classmethod
    def parse(cls, value):
        """Map the ``proxyProtocol`` config value; unknown or missing means NONE."""
        if not value:
            return cls.NONE
        value = str(value).strip().lower()
        for member in (cls.V1, cls.V2):
            if member.value == value:
                return member
        return cls.NONE

    @property
    def enabled(self):
        return self is not ProxyProtocol.NONE

    def encode(self, client, target) -> bytes:
        if self is ProxyProtocol.V1:
            return encode_v1(client, target)
        if self is ProxyProtocol.V2:
            return encode_v2(client, target)
        return b""
