"""Tests for routeros.py - first-boot script rendering."""

import pytest

from chr_installer.errors import ValidationError
from chr_installer.routeros import (
    AUTORUN_PATH,
    AdminCredentials,
    quote_string,
    render_autorun,
    validate_password,
)
from chr_installer.types import NetworkConfig

STATIC = NetworkConfig(
    interface_name="eth0",
    cidr_address="203.0.113.5/24",
    gateway="203.0.113.1",
    dns_servers=("1.1.1.1", "1.0.0.1"),
)


class TestRenderAutorun:
    """Tests for render_autorun."""

    def test_static_script(self):
        """Static addressing should produce the exact script."""
        config = render_autorun(STATIC, AdminCredentials("s3cret-pass"))

        assert config.path == AUTORUN_PATH == "rw/autorun.scr"
        assert config.content.decode() == (
            "# RouterOS first-boot configuration written by chr-installer\n"
            "/ip address add address=203.0.113.5/24 "
            "interface=[/interface ethernet find where name=ether1]\n"
            "/ip route add gateway=203.0.113.1\n"
            "/ip service disable telnet\n"
            '/user set 0 name=admin password="s3cret-pass"\n'
            "/ip dns set servers=1.1.1.1,1.0.0.1\n"
            "/system package update install\n"
        )

    def test_off_link_gateway(self):
        """A /32 address names its gateway as the point-to-point peer."""
        network = NetworkConfig("eth0", "203.0.113.5/32", "172.31.1.1")

        script = render_autorun(network, AdminCredentials("s3cret-pass")).content

        assert (
            b"/ip address add address=203.0.113.5/32 network=172.31.1.1 "
            b"interface=[/interface ethernet find where name=ether1]\n"
        ) in script
        assert b"/ip route add gateway=172.31.1.1\n" in script

    def test_dhcp_script(self):
        network = NetworkConfig("dhcp", None, None, use_dhcp=True)

        script = render_autorun(
            network, AdminCredentials("s3cret-pass"), router_interface="ether2"
        ).content.decode()

        assert "/ip dhcp-client add interface=ether2 disabled=no\n" in script
        assert "/ip address add" not in script
        assert "/ip route add" not in script
        assert "/ip dns set" not in script

    def test_rendering_is_deterministic(self):
        credentials = AdminCredentials("s3cret-pass")
        first = render_autorun(STATIC, credentials)
        assert render_autorun(STATIC, credentials) == first

    def test_password_is_quoted(self):
        """Quotes and variable references must not break out of the string."""
        script = render_autorun(
            STATIC, AdminCredentials('pa"ss$word?')
        ).content.decode()
        assert '/user set 0 name=admin password="pa\\"ss\\$word\\?"' in script

    def test_rejects_injected_interface(self):
        with pytest.raises(ValidationError) as exc_info:
            render_autorun(
                STATIC,
                AdminCredentials("s3cret-pass"),
                router_interface="ether1]; /system reset-configuration",
            )
        assert exc_info.value.error_code == "invalid_name"

    @pytest.mark.parametrize(
        "address,gateway",
        [
            ("203.0.113.5", "203.0.113.1"),
            ("203.0.113.5/24", "not-an-ip"),
            ("203.0.113.5/24", None),
            (None, "203.0.113.1"),
        ],
    )
    def test_rejects_bad_addressing(self, address, gateway):
        network = NetworkConfig("eth0", address, gateway)
        with pytest.raises(ValidationError) as exc_info:
            render_autorun(network, AdminCredentials("s3cret-pass"))
        assert exc_info.value.error_code == "invalid_address"

    def test_rejects_bad_dns(self):
        network = NetworkConfig(
            "eth0", "203.0.113.5/24", "203.0.113.1", dns_servers=("1.1.1.1; x",)
        )
        with pytest.raises(ValidationError):
            render_autorun(network, AdminCredentials("s3cret-pass"))


class TestQuoteString:
    def test_escapes_special_characters(self):
        assert quote_string('say "hi" $x') == '"say \\"hi\\" \\$x"'
        assert quote_string("back\\slash") == '"back\\\\slash"'
        assert quote_string("plain") == '"plain"'


class TestPassword:
    """Tests for password validation and masking."""

    def test_accepts_password(self):
        assert validate_password("correct horse") == "correct horse"

    def test_too_short(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password("short")
        assert exc_info.value.error_code == "password_too_short"
        assert exc_info.value.exit_code == 2

    def test_custom_minimum(self):
        assert validate_password("abcd", min_length=4) == "abcd"

    def test_control_characters(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password("abcdefgh\n")
        assert exc_info.value.error_code == "password_invalid"

    def test_repr_hides_password(self):
        assert "s3cret-pass" not in repr(AdminCredentials("s3cret-pass"))
