"""RouterOS first-boot script generation.

RouterOS executes ``rw/autorun.scr`` on the data partition once, on its
first boot. The script assigns the host's address to the router, sets the
admin password, and disables telnet. Every interpolated value is validated
here; once rendered the script is written to the image verbatim.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass

from chr_installer.errors import ValidationError
from chr_installer.types import NetworkConfig

logger = logging.getLogger(__name__)

AUTORUN_PATH = "rw/autorun.scr"
DEFAULT_ROUTER_INTERFACE = "ether1"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
# Characters with a meaning inside a RouterOS double-quoted string
_ESCAPES = {"\\": "\\\\", '"': '\\"', "$": "\\$", "?": "\\?"}


@dataclass(frozen=True)
class AdminCredentials:
    """Router administrator account set on first boot."""

    password: str
    username: str = "admin"

    def __repr__(self) -> str:
        return f"AdminCredentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class FirstBootConfig:
    """Rendered first-boot script.

    Attributes:
        content: Script bytes, written to the image unchanged.
        path: Location relative to the data partition root.
    """

    content: bytes
    path: str = AUTORUN_PATH


def validate_password(password: str, min_length: int = 8) -> str:
    """Check an admin password can be set safely.

    Raises:
        ValidationError: Too short or contains control characters.
    """
    if len(password) < min_length:
        raise ValidationError(
            f"Password must be at least {min_length} characters long",
            error_code="password_too_short",
        )
    if any(not ch.isprintable() for ch in password):
        raise ValidationError(
            "Password must not contain control characters",
            error_code="password_invalid",
        )
    return password


def quote_string(value: str) -> str:
    """Quote a value as a RouterOS double-quoted string."""
    return '"' + "".join(_ESCAPES.get(ch, ch) for ch in value) + '"'


def _validate_name(value: str, what: str) -> str:
    if not _NAME_PATTERN.match(value):
        raise ValidationError(f"Invalid {what}: {value!r}", error_code="invalid_name")
    return value


def _validate_interface(value: str | None) -> str:
    if not value:
        raise ValidationError(
            "Static address is required", error_code="invalid_address"
        )
    try:
        iface = ipaddress.ip_interface(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid address {value!r}: expected CIDR notation such as 192.0.2.10/24",
            error_code="invalid_address",
        ) from e
    if "/" not in value:
        raise ValidationError(
            f"Address {value!r} lacks a prefix length", error_code="invalid_address"
        )
    return iface.with_prefixlen


def _validate_ip(value: str | None, what: str) -> str:
    if not value:
        raise ValidationError(f"{what} is required", error_code="invalid_address")
    try:
        return str(ipaddress.ip_address(value))
    except ValueError as e:
        raise ValidationError(
            f"Invalid {what.lower()} {value!r}", error_code="invalid_address"
        ) from e


def render_autorun(
    network: NetworkConfig,
    credentials: AdminCredentials,
    *,
    router_interface: str = DEFAULT_ROUTER_INTERFACE,
) -> FirstBootConfig:
    """Render the first-boot script.

    Args:
        network: Addressing for the router's uplink.
        credentials: Administrator account.
        router_interface: Router interface receiving the address.

    Returns:
        FirstBootConfig holding the script bytes.

    Raises:
        ValidationError: A value cannot be expressed safely.
    """
    router_interface = _validate_name(router_interface, "router interface")
    username = _validate_name(credentials.username, "username")
    dns = [_validate_ip(server, "DNS server") for server in network.dns_servers]

    lines = ["# RouterOS first-boot configuration written by chr-installer"]
    if network.use_dhcp:
        lines.append(f"/ip dhcp-client add interface={router_interface} disabled=no")
    else:
        address = _validate_interface(network.cidr_address)
        gateway = _validate_ip(network.gateway, "Gateway")
        peer = ""
        if ipaddress.ip_address(gateway) not in ipaddress.ip_interface(address).network:
            # Off-link gateway of a /32 or /31 address
            peer = f" network={gateway}"
        lines.append(
            f"/ip address add address={address}{peer} "
            f"interface=[/interface ethernet find where name={router_interface}]"
        )
        lines.append(f"/ip route add gateway={gateway}")
    lines.append("/ip service disable telnet")
    lines.append(
        f"/user set 0 name={username} password={quote_string(credentials.password)}"
    )
    if dns:
        lines.append(f"/ip dns set servers={','.join(dns)}")
    lines.append("/system package update install")

    logger.debug(
        "Rendered first-boot script (%s, %d DNS servers)",
        "dhcp" if network.use_dhcp else "static",
        len(dns),
    )
    return FirstBootConfig(content=("\n".join(lines) + "\n").encode("utf-8"))


__all__ = [
    "AUTORUN_PATH",
    "DEFAULT_ROUTER_INTERFACE",
    "AdminCredentials",
    "FirstBootConfig",
    "quote_string",
    "render_autorun",
    "validate_password",
]
