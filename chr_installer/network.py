"""Host network detection.

The router takes over the host's public address, so the first-boot script
is built from the host's current default route and the primary IPv4
address of the interface that route leaves through. Operators can instead
pass static values or ask for DHCP.
"""

import ipaddress
import json
import logging
from collections.abc import Sequence

from chr_installer.command import CommandRunner, run_command
from chr_installer.errors import CommandError, HostEnvironmentError, ValidationError
from chr_installer.types import NetworkConfig

logger = logging.getLogger(__name__)


def _ip_json(runner: CommandRunner, args: list[str]) -> list[dict]:
    try:
        result = runner(["ip", "-j", *args])
        data = json.loads(result.stdout or "[]")
    except CommandError as e:
        raise HostEnvironmentError(
            f"Could not query host network: {e.message}", error_code="network_query"
        ) from e
    except ValueError as e:
        raise HostEnvironmentError(
            f"Unexpected output from ip {' '.join(args)}: {e}",
            error_code="network_query",
        ) from e
    if not isinstance(data, list):
        raise HostEnvironmentError(
            f"Unexpected output from ip {' '.join(args)}", error_code="network_query"
        )
    return data


def default_route(runner: CommandRunner = run_command) -> tuple[str, str]:
    """Return (interface, gateway) of the IPv4 default route.

    Raises:
        HostEnvironmentError: No default route via a gateway.
    """
    for route in _ip_json(runner, ["-4", "route", "show", "default"]):
        if route.get("gateway") and route.get("dev"):
            return route["dev"], route["gateway"]
    raise HostEnvironmentError(
        "No IPv4 default route found; pass --address and --gateway or --dhcp",
        error_code="network_not_detected",
    )


def primary_address(interface: str, runner: CommandRunner = run_command) -> str:
    """Return the first global IPv4 address of an interface in CIDR notation.

    Raises:
        HostEnvironmentError: The interface has no usable IPv4 address.
    """
    for link in _ip_json(runner, ["-4", "addr", "show", "dev", interface]):
        for addr in link.get("addr_info", []):
            if addr.get("family") != "inet" or addr.get("scope", "global") != "global":
                continue
            if "local" in addr and "prefixlen" in addr:
                return f"{addr['local']}/{addr['prefixlen']}"
    raise HostEnvironmentError(
        f"No IPv4 address found on {interface}", error_code="network_not_detected"
    )


def check_gateway(address: str, gateway: str) -> None:
    """Check the router can reach a gateway from an address.

    A gateway outside the address's network is accepted only for /31 and
    /32 addresses, which reach it as a point-to-point peer.

    Raises:
        ValidationError: The gateway is unreachable from the address.
    """
    iface = ipaddress.ip_interface(address)
    gw = ipaddress.ip_address(gateway)
    if gw.version != iface.version:
        raise ValidationError(
            f"Gateway {gateway} and address {address} are different IP versions",
            error_code="invalid_address",
        )
    if gw in iface.network:
        return
    if iface.network.prefixlen < iface.max_prefixlen - 1:
        raise ValidationError(
            f"Gateway {gateway} is not on the network {iface.network}",
            error_code="invalid_address",
        )
    logger.info("Gateway %s is off-link for %s, using it as the peer", gw, address)


def detect_network(
    runner: CommandRunner = run_command, dns_servers: Sequence[str] = ()
) -> NetworkConfig:
    """Build a NetworkConfig from the host's default route.

    Args:
        runner: Command runner for ``ip``.
        dns_servers: Resolvers to hand to the router.

    Raises:
        HostEnvironmentError: The host network could not be determined.
        ValidationError: The detected gateway is unreachable from the address.
    """
    interface, gateway = default_route(runner)
    address = primary_address(interface, runner)
    check_gateway(address, gateway)
    logger.info("Detected %s on %s via %s", address, interface, gateway)
    return NetworkConfig(
        interface_name=interface,
        cidr_address=address,
        gateway=gateway,
        dns_servers=tuple(dns_servers),
    )


def static_network(
    address: str, gateway: str, dns_servers: Sequence[str] = ()
) -> NetworkConfig:
    """Build a NetworkConfig from operator supplied values.

    Raises:
        ValidationError: The address or gateway is malformed, or the gateway
            cannot be reached from the address.
    """
    try:
        iface = ipaddress.ip_interface(address)
    except ValueError as e:
        raise ValidationError(
            f"Invalid address {address!r}: expected CIDR notation",
            error_code="invalid_address",
        ) from e
    if "/" not in address:
        raise ValidationError(
            f"Address {address!r} lacks a prefix length", error_code="invalid_address"
        )
    try:
        gw = ipaddress.ip_address(gateway)
    except ValueError as e:
        raise ValidationError(
            f"Invalid gateway {gateway!r}", error_code="invalid_address"
        ) from e
    check_gateway(iface.with_prefixlen, str(gw))
    return NetworkConfig(
        interface_name="static",
        cidr_address=iface.with_prefixlen,
        gateway=str(gw),
        dns_servers=tuple(dns_servers),
    )


def dhcp_network(dns_servers: Sequence[str] = ()) -> NetworkConfig:
    """NetworkConfig that makes the router ask for an address over DHCP."""
    return NetworkConfig(
        interface_name="dhcp",
        cidr_address=None,
        gateway=None,
        dns_servers=tuple(dns_servers),
        use_dhcp=True,
    )


def resolve_network(
    *,
    dhcp: bool = False,
    address: str | None = None,
    gateway: str | None = None,
    dns_servers: Sequence[str] = (),
    runner: CommandRunner = run_command,
) -> NetworkConfig:
    """Pick DHCP, static values, or detection, in that order.

    Raises:
        ValidationError: Conflicting or incomplete options.
        HostEnvironmentError: Detection was needed and failed.
    """
    if dhcp:
        if address or gateway:
            raise ValidationError(
                "--dhcp cannot be combined with --address or --gateway",
                error_code="conflicting_options",
            )
        return dhcp_network(dns_servers)
    if address or gateway:
        if not (address and gateway):
            raise ValidationError(
                "--address and --gateway must be given together",
                error_code="conflicting_options",
            )
        return static_network(address, gateway, dns_servers)
    return detect_network(runner, dns_servers)


__all__ = [
    "check_gateway",
    "default_route",
    "detect_network",
    "dhcp_network",
    "primary_address",
    "resolve_network",
    "static_network",
]
