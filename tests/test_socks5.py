"""Tests for the SOCKS5 client handshake codec."""

import pytest

from conftest import FakeWriter, make_reader
from proxybridge.address import EndpointAddress
from proxybridge.errors import MalformedResponse, UnsupportedAuthMethod, UpstreamRefused
from proxybridge.socks5 import (
    SOCKS5_AUTH_METHOD_NONE,
    SOCKS5_AUTH_METHOD_PASSWORD,
    auth_method_name,
    encode_connect_request,
    encode_handshake_request,
    read_connect_response,
    reply_name,
    socks5_connect,
)

DEST = EndpointAddress("example.com", 443)

# VER, REP=0, RSV, ATYP=IPv4, 0.0.0.0, port 0
REPLY_OK = bytes([0x05, 0x00, 0x00, 0x01, 0, 0, 0, 0, 0, 0])


def _reply(code: int) -> bytes:
    return bytes([0x05, code, 0x00, 0x01, 0, 0, 0, 0, 0, 0])


class TestEncoding:
    def test_handshake_offers_only_no_auth(self):
        assert encode_handshake_request([SOCKS5_AUTH_METHOD_NONE]) == b"\x05\x01\x00"

    def test_connect_request_domain(self):
        assert encode_connect_request(DEST) == b"\x05\x01\x00\x03\x0bexample.com\x01\xbb"

    def test_connect_request_ipv4(self):
        assert encode_connect_request(EndpointAddress("10.0.0.1", 8388)) == b"\x05\x01\x00\x01\x0a\x00\x00\x01\x20\xc4"

    def test_connect_request_ipv6(self):
        req = encode_connect_request(EndpointAddress("::1", 80))
        assert req[:4] == b"\x05\x01\x00\x04"
        assert req[4:20] == b"\x00" * 15 + b"\x01"
        assert req[20:] == b"\x00\x50"

    def test_reply_names(self):
        assert reply_name(0x05) == "connection refused"
        assert "unknown" in reply_name(0x42)

    def test_connect_request_internationalized_domain(self):
        req = encode_connect_request(EndpointAddress("bücher.example", 443))
        assert req == b"\x05\x01\x00\x03\x15xn--bcher-kva.example\x01\xbb"

    def test_auth_method_names(self):
        assert auth_method_name(SOCKS5_AUTH_METHOD_PASSWORD) == "username/password"
        assert "unknown" in auth_method_name(0x80)


class TestReadConnectResponse:
    @pytest.mark.asyncio
    async def test_consumes_domain_bound_address_only(self):
        reader = make_reader(b"\x05\x00\x00\x03\x04host\x1f\x90" + b"tunnel")
        resp = await read_connect_response(reader)
        assert (resp.reply, resp.bound_host, resp.bound_port) == (0, "host", 8080)
        assert await reader.read() == b"tunnel"

    @pytest.mark.asyncio
    async def test_ipv6_bound_address(self):
        reader = make_reader(b"\x05\x00\x00\x04" + b"\x00" * 15 + b"\x01" + b"\x00\x35")
        resp = await read_connect_response(reader)
        assert resp.bound_host == "::1"
        assert resp.bound_port == 53

    @pytest.mark.asyncio
    async def test_unknown_address_type(self):
        with pytest.raises(MalformedResponse):
            await read_connect_response(make_reader(b"\x05\x00\x00\x09"))


class TestSocks5Connect:
    @pytest.mark.asyncio
    async def test_success_sends_handshake_then_connect(self):
        writer = FakeWriter()
        reader = make_reader(b"\x05\x00" + REPLY_OK + b"payload")
        resp = await socks5_connect(reader, writer, DEST)
        assert resp.reply == 0
        assert (resp.bound_host, resp.bound_port) == ("0.0.0.0", 0)
        assert writer.writes == [b"\x05\x01\x00", b"\x05\x01\x00\x03\x0bexample.com\x01\xbb"]
        # reply fully consumed, nothing of the tunnel stream eaten
        assert await reader.read() == b"payload"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", [0x02, 0xFF])
    async def test_other_auth_method_fails_before_connect(self, method):
        writer = FakeWriter()
        with pytest.raises(UnsupportedAuthMethod) as exc:
            await socks5_connect(make_reader(bytes([0x05, method])), writer, DEST)
        assert exc.value.method == method
        assert auth_method_name(method) in str(exc.value)
        # no TCP-connect request was sent
        assert writer.writes == [b"\x05\x01\x00"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [0x01, 0x03, 0x05])
    async def test_failed_reply_code_is_refused(self, code):
        with pytest.raises(UpstreamRefused) as exc:
            await socks5_connect(make_reader(b"\x05\x00" + _reply(code)), FakeWriter(), DEST)
        assert exc.value.code == code
        assert reply_name(code) in str(exc.value)

    @pytest.mark.asyncio
    async def test_close_mid_handshake_is_truncated(self):
        with pytest.raises(MalformedResponse, match="truncated"):
            await socks5_connect(make_reader(b"\x05"), FakeWriter(), DEST)

    @pytest.mark.asyncio
    async def test_close_mid_connect_response(self):
        with pytest.raises(MalformedResponse, match="truncated"):
            await socks5_connect(make_reader(b"\x05\x00\x05\x00\x00\x01\x00"), FakeWriter(), DEST)

    @pytest.mark.asyncio
    async def test_wrong_version_byte(self):
        with pytest.raises(MalformedResponse):
            await socks5_connect(make_reader(b"\x04\x00"), FakeWriter(), DEST)
