import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from urllib.parse import quote, urlencode

logger = logging.getLogger(__name__)


DEFAULT_NETWORK = "tcp"
VISION_FLOW = "xtls-rprx-vision"


@dataclass(frozen=True)
class SecurityParams:
    public_key: str = ""
    fingerprint: str = "chrome"
    server_name: str = "yahoo.com"
    short_id: str = ""
    spider_x: str = "/"

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "SecurityParams":
        defaults = cls()
        return cls(
            public_key=str(data.get("publicKey") or defaults.public_key),
            fingerprint=str(data.get("fingerprint") or defaults.fingerprint),
            server_name=str(data.get("serverName") or defaults.server_name),
            short_id=str(data.get("shortId") or defaults.short_id),
            spider_x=str(data.get("spiderX") or defaults.spider_x),
        )


@dataclass(frozen=True)
class StreamParameters:
    network: str = DEFAULT_NETWORK
    security: str = "none"
    security_params: Optional[SecurityParams] = None


def _first(values: Any) -> str:
    if isinstance(values, list) and values:
        return str(values[0] or "")
    return ""


def extract_stream_parameters(stream_settings: Union[str, Dict[str, Any], None]) -> StreamParameters:
    """Достает network/security и параметры reality/tls из streamSettings inbound"""
    if isinstance(stream_settings, (str, bytes)):
        try:
            stream_settings = json.loads(stream_settings)
        except (TypeError, ValueError):
            logger.warning("⚠️ Не удалось разобрать streamSettings, используется tcp")
            return StreamParameters()

    if not isinstance(stream_settings, dict):
        return StreamParameters()

    network = str(stream_settings.get("network") or DEFAULT_NETWORK)
    security = str(stream_settings.get("security") or "none").lower()

    if security == "reality":
        reality = stream_settings.get("realitySettings")
        if not isinstance(reality, dict):
            return StreamParameters(network=network, security=security, security_params=SecurityParams())
        nested = reality.get("settings") if isinstance(reality.get("settings"), dict) else {}
        return StreamParameters(
            network=network,
            security=security,
            security_params=SecurityParams.from_mapping({
                "publicKey": nested.get("publicKey"),
                "fingerprint": nested.get("fingerprint"),
                "serverName": _first(reality.get("serverNames")),
                "shortId": _first(reality.get("shortIds")),
                "spiderX": nested.get("spiderX"),
            }),
        )

    if security == "tls":
        tls = stream_settings.get("tlsSettings")
        tls = tls if isinstance(tls, dict) else {}
        nested = tls.get("settings") if isinstance(tls.get("settings"), dict) else {}
        return StreamParameters(
            network=network,
            security=security,
            security_params=SecurityParams(
                fingerprint=str(nested.get("fingerprint") or "chrome"),
                server_name=str(tls.get("serverName") or ""),
            ),
        )

    return StreamParameters(network=network, security=security)


def _resolve_security_params(
    security_params: Union[SecurityParams, Dict[str, Any], None],
) -> SecurityParams:
    if isinstance(security_params, SecurityParams):
        return security_params
    if isinstance(security_params, dict):
        return SecurityParams.from_mapping(security_params)
    return SecurityParams()


def build_connection_uri(
    protocol: str,
    network: str,
    security: str,
    client_id: str,
    identity: str,
    server_address: str,
    port: int,
    security_params: Union[SecurityParams, Dict[str, Any], None] = None,
) -> str:
    protocol = (protocol or "").lower()
    network = network or DEFAULT_NETWORK
    security = (security or "none").lower()
    fragment = quote(identity, safe="")

    if protocol == "vmess":
        vmess_config = {
            "v": "2",
            "ps": identity,
            "add": server_address,
            "port": port,
            "id": client_id,
            "aid": 0,
            "net": network,
            "type": "none",
            "host": "",
            "path": "",
            "tls": "",
            "sni": "",
        }
        payload = json.dumps(vmess_config, separators=(",", ":"), ensure_ascii=False)
        return "vmess://" + base64.b64encode(payload.encode("utf-8")).decode("ascii")

    if protocol == "vless":
        query = [("type", network), ("encryption", "none")]
        params = _resolve_security_params(security_params)

        if security == "reality":
            query.extend([
                ("security", "reality"),
                ("pbk", params.public_key),
                ("fp", params.fingerprint),
                ("sni", params.server_name),
                ("sid", params.short_id),
                ("spx", params.spider_x),
                ("flow", VISION_FLOW),
            ])
        elif security == "tls":
            query.extend([
                ("security", "tls"),
                ("sni", params.server_name or server_address),
                ("fp", params.fingerprint),
            ])

        return f"vless://{client_id}@{server_address}:{port}?{urlencode(query)}#{fragment}"

    if protocol == "trojan":
        query = urlencode([("type", network)])
        return f"trojan://{client_id}@{server_address}:{port}?{query}#{fragment}"

    logger.error(f"❌ Неподдерживаемый протокол для ссылки подключения: {protocol}")
    return ""
