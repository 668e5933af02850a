"""Tests for EndpointAddress parsing and formatting."""

import pytest

from proxybridge.address import EndpointAddress


class TestParse:
    def test_ipv4_with_port(self):
        addr = EndpointAddress.parse("10.0.0.1:8388")
        assert addr.host == "10.0.0.1"
        assert addr.port == 8388
        assert addr.is_ip

    def test_hostname_with_port(self):
        addr = EndpointAddress.parse("example.com:443")
        assert addr.host == "example.com"
        assert not addr.is_ip

    def test_bracketed_ipv6(self):
        addr = EndpointAddress.parse("[::1]:1080")
        assert addr.host == "::1"
        assert addr.port == 1080
        assert addr.ip.version == 6

    def test_default_port_used_when_missing(self):
        assert EndpointAddress.parse("proxy.local", default_port=1080).port == 1080

    @pytest.mark.parametrize("text", ["", "example.com", "host:notaport", "host:70000", "[::1:80", ":80"])
    def test_rejects_bad_input(self, text):
        with pytest.raises(ValueError):
            EndpointAddress.parse(text)

    def test_rejects_overlong_hostname(self):
        with pytest.raises(ValueError):
            EndpointAddress("a" * 256, 80)

    def test_rejects_overlong_total_length(self):
        # every label is legal, the whole name is not
        with pytest.raises(ValueError):
            EndpointAddress(".".join(["a" * 63] * 5), 80)

    @pytest.mark.parametrize("host", ["a" * 64 + ".example.com", "a..b"])
    def test_rejects_hostnames_idna_cannot_encode(self, host):
        with pytest.raises(ValueError):
            EndpointAddress(host, 443)

    def test_port_zero_allowed_for_ephemeral_bind(self):
        assert EndpointAddress("127.0.0.1", 0).port == 0


class TestFormat:
    def test_ipv4_and_hostname_render_host_port(self):
        assert str(EndpointAddress("10.0.0.1", 8388)) == "10.0.0.1:8388"
        assert str(EndpointAddress("example.com", 443)) == "example.com:443"

    def test_ipv6_is_bracketed(self):
        assert str(EndpointAddress("2001:db8::1", 443)) == "[2001:db8::1]:443"

    def test_from_host_port_strips_brackets(self):
        addr = EndpointAddress.from_host_port("[::1]", "8080")
        assert addr == EndpointAddress("::1", 8080)

    def test_hostname_and_ip_are_distinct(self):
        assert EndpointAddress("localhost", 80) != EndpointAddress("127.0.0.1", 80)

    def test_wire_text_uses_ascii_labels(self):
        addr = EndpointAddress("bücher.example", 443)
        assert addr.ascii_host == "xn--bcher-kva.example"
        assert addr.wire_text() == "xn--bcher-kva.example:443"
        assert EndpointAddress("2001:db8::1", 80).wire_text() == "[2001:db8::1]:80"
