import base64
import json
from urllib.parse import parse_qs, urlsplit

from app.utils.connection_links import (
    SecurityParams,
    StreamParameters,
    build_connection_uri,
    extract_stream_parameters,
)


REALITY_PARAMS = {
    "publicKey": "PK",
    "fingerprint": "chrome",
    "serverName": "sni.example",
    "shortId": "sid",
    "spiderX": "/",
}


def test_vless_reality_uri_matches_expected_format():
    uri = build_connection_uri(
        "vless", "tcp", "reality", "U", "tg_1_2", "host", 443, REALITY_PARAMS
    )

    assert uri == (
        "vless://U@host:443?type=tcp&encryption=none&security=reality&pbk=PK&fp=chrome"
        "&sni=sni.example&sid=sid&spx=%2F&flow=xtls-rprx-vision#tg_1_2"
    )


def test_vless_identity_with_at_sign():
    uri = build_connection_uri(
        "vless", "tcp", "reality", "abc", "u@x", "host.example", 443, REALITY_PARAMS
    )

    assert uri == (
        "vless://abc@host.example:443?type=tcp&encryption=none&security=reality&pbk=PK"
        "&fp=chrome&sni=sni.example&sid=sid&spx=%2F&flow=xtls-rprx-vision#u%40x"
    )


def test_vless_reality_uses_defaults_for_missing_params():
    uri = build_connection_uri("vless", "tcp", "reality", "U", "name", "host", 443, None)
    query = parse_qs(urlsplit(uri).query)

    assert query["fp"] == ["chrome"]
    assert query["sni"] == ["yahoo.com"]
    assert query["spx"] == ["/"]
    assert "pbk" not in query or query["pbk"] == [""]


def test_vless_without_security_has_only_base_params():
    uri = build_connection_uri("vless", "ws", "none", "U", "name", "host", 8443)

    assert uri == "vless://U@host:8443?type=ws&encryption=none#name"


def test_vless_tls_falls_back_to_server_address_for_sni():
    params = SecurityParams(fingerprint="firefox", server_name="")
    uri = build_connection_uri("vless", "tcp", "tls", "U", "name", "vpn.example.com", 443, params)
    query = parse_qs(urlsplit(uri).query)

    assert query["security"] == ["tls"]
    assert query["sni"] == ["vpn.example.com"]
    assert query["fp"] == ["firefox"]
    assert "flow" not in query


def test_vmess_uri_is_base64_json():
    uri = build_connection_uri("vmess", "tcp", "none", "U", "tg_1_2", "host", 443)

    assert uri.startswith("vmess://")
    decoded = json.loads(base64.b64decode(uri[len("vmess://"):]).decode("utf-8"))
    assert decoded == {
        "v": "2",
        "ps": "tg_1_2",
        "add": "host",
        "port": 443,
        "id": "U",
        "aid": 0,
        "net": "tcp",
        "type": "none",
        "host": "",
        "path": "",
        "tls": "",
        "sni": "",
    }


def test_trojan_uri():
    uri = build_connection_uri("trojan", "grpc", "tls", "secret", "tg_1_2", "host", 443)

    assert uri == "trojan://secret@host:443?type=grpc#tg_1_2"


def test_identity_is_percent_encoded_in_fragment():
    uri = build_connection_uri("trojan", "tcp", "none", "secret", "my name", "host", 443)

    assert uri.endswith("#my%20name")


def test_unknown_protocol_returns_empty_string():
    assert build_connection_uri("shadowsocks", "tcp", "none", "U", "name", "host", 443) == ""


def test_extract_reality_parameters_from_nested_settings():
    stream = {
        "network": "tcp",
        "security": "reality",
        "realitySettings": {
            "serverNames": ["sni.example", "other.example"],
            "shortIds": ["sid", "sid2"],
            "settings": {"publicKey": "PK", "fingerprint": "safari", "spiderX": "/path"},
        },
    }

    params = extract_stream_parameters(stream)

    assert params.network == "tcp"
    assert params.security == "reality"
    assert params.security_params == SecurityParams(
        public_key="PK",
        fingerprint="safari",
        server_name="sni.example",
        short_id="sid",
        spider_x="/path",
    )


def test_extract_parameters_accepts_json_string():
    params = extract_stream_parameters(json.dumps({"network": "ws", "security": "none"}))

    assert params == StreamParameters(network="ws", security="none")


def test_extract_parameters_defaults_on_garbage():
    assert extract_stream_parameters("{not json") == StreamParameters()
    assert extract_stream_parameters(None) == StreamParameters()


def test_extract_tls_parameters():
    stream = {
        "network": "tcp",
        "security": "tls",
        "tlsSettings": {"serverName": "vpn.example.com", "settings": {"fingerprint": "edge"}},
    }

    params = extract_stream_parameters(stream)

    assert params.security == "tls"
    assert params.security_params.server_name == "vpn.example.com"
    assert params.security_params.fingerprint == "edge"
