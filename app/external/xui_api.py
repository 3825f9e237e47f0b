import asyncio
import json
import logging
import ssl
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

logger = logging.getLogger(__name__)


AUTH_FAILURE_STATUSES = (401, 403)


class XuiAPIError(Exception):
    def __init__(self, message: str, status_code: int = None, response_data: Any = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        super().__init__(self.message)


class XuiAuthError(XuiAPIError):
    """Не удалось авторизоваться в панели (в том числе после повторного входа)"""


@dataclass
class XuiSession:
    """Учетные данные сессии 3x-ui на время одной операции.

    При повторной авторизации _make_request обновляет объект на месте,
    поэтому последующие вызовы с той же сессией используют новые данные.
    """
    credential: str
    auth_mode: str = "cookie"
    created_at: datetime = field(default_factory=datetime.utcnow)

    def auth_headers(self) -> Dict[str, str]:
        if self.auth_mode == "bearer":
            return {'Authorization': f'Bearer {self.credential}'}
        return {'Cookie': self.credential}

    def refresh(self, other: "XuiSession") -> None:
        self.credential = other.credential
        self.auth_mode = other.auth_mode
        self.created_at = other.created_at


@dataclass
class ClientTraffic:
    email: str
    up: int
    down: int
    total: int = 0
    expiry_time: int = 0
    enable: bool = True
    inbound_id: Optional[int] = None
    id: Optional[int] = None

    @property
    def used_bytes(self) -> int:
        return self.up + self.down


@dataclass
class XuiInbound:
    id: int
    port: int
    protocol: str
    remark: str = ""
    enable: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)
    stream_settings: Dict[str, Any] = field(default_factory=dict)
    client_stats: List[ClientTraffic] = field(default_factory=list)

    @property
    def clients(self) -> List[Dict[str, Any]]:
        clients = self.settings.get('clients')
        if not isinstance(clients, list):
            return []
        return [client for client in clients if isinstance(client, dict)]

    def find_client_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return next((c for c in self.clients if c.get('email') == email), None)

    def find_client_by_id(self, client_id: str) -> Optional[Dict[str, Any]]:
        return next(
            (c for c in self.clients if client_id in (c.get('id'), c.get('password'))),
            None,
        )

    def find_client_stat(self, email: str) -> Optional[ClientTraffic]:
        return next((stat for stat in self.client_stats if stat.email == email), None)


@dataclass
class XuiClientSpec:
    id: str
    email: str
    total_bytes: int
    expiry_time: datetime
    enable: bool = True
    flow: str = ""
    limit_ip: int = 0
    tg_id: str = ""
    sub_id: str = ""
    protocol: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            'id': self.id,
            'flow': self.flow,
            'email': self.email,
            'limitIp': self.limit_ip,
            'totalGB': self.total_bytes,
            'expiryTime': to_unix_ms(self.expiry_time),
            'enable': self.enable,
            'tgId': self.tg_id,
            'subId': self.sub_id,
            'reset': 0,
        }
        if self.protocol == 'trojan':
            payload['password'] = self.id
        return payload


def to_unix_ms(value: datetime) -> int:
    """Переводит наивное UTC-время в миллисекунды, как ожидает панель"""
    return int((value - datetime(1970, 1, 1)).total_seconds() * 1000)


def load_json_object(value: Any) -> Dict[str, Any]:
    """Поля settings/streamSettings приходят то строкой JSON, то объектом"""
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)) and value:
        try:
            parsed = json.loads(value)
        except (TypeError, ValueError):
            logger.debug("Не удалось разобрать JSON поле панели: %.100s", value)
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def parse_envelope(body: Any) -> Tuple[bool, str, Any]:
    """Разбирает конверт ответа {success, msg, obj} с учетом нестабильного формата"""
    if isinstance(body, dict):
        message = str(body.get('msg') or body.get('message') or '')
        if 'success' in body:
            return bool(body.get('success')), message, body.get('obj')
        if 'raw_response' in body:
            return False, f"Некорректный ответ панели: {str(body['raw_response'])[:200]}", None
        return True, message, body
    if isinstance(body, list):
        return True, '', body
    return False, 'Пустой или некорректный ответ панели', None


def parse_client_traffic(data: Any) -> Optional[ClientTraffic]:
    if not isinstance(data, dict):
        return None
    if data.get('up') is None or data.get('down') is None:
        return None
    return ClientTraffic(
        email=str(data.get('email') or ''),
        up=_safe_int(data.get('up')),
        down=_safe_int(data.get('down')),
        total=_safe_int(data.get('total')),
        expiry_time=_safe_int(data.get('expiryTime')),
        enable=bool(data.get('enable', True)),
        inbound_id=_safe_int(data.get('inboundId'), default=0) or None,
        id=_safe_int(data.get('id'), default=0) or None,
    )


def parse_inbound(data: Dict[str, Any]) -> XuiInbound:
    stats = data.get('clientStats') or []
    return XuiInbound(
        id=_safe_int(data.get('id')),
        port=_safe_int(data.get('port'), default=443),
        protocol=str(data.get('protocol') or '').lower(),
        remark=str(data.get('remark') or ''),
        enable=bool(data.get('enable', True)),
        settings=load_json_object(data.get('settings')),
        stream_settings=load_json_object(data.get('streamSettings')),
        client_stats=[
            stat for stat in (parse_client_traffic(item) for item in stats if isinstance(stats, list))
            if stat is not None
        ],
    )


class XuiAPI:

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        auth_mode: str = "cookie",
        timeout: int = 10,
        verify_ssl: bool = True,
    ):
        self.base_url = (base_url or '').rstrip('/')
        self.username = username
        self.password = password
        self.auth_mode = (auth_mode or "cookie").lower()
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        logger.debug(f"Подключение к 3x-ui: {self.base_url}")

        connector_kwargs = {}
        if self.base_url.startswith('https://') and not self.verify_ssl:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            connector_kwargs['ssl'] = ssl_context
            logger.debug("SSL проверка отключена для панели")

        # Куки не сохраняются в клиенте: учетные данные передаются явно через XuiSession
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={
                'Content-Type': 'application/json',
                'Accept': 'application/json',
            },
            connector=aiohttp.TCPConnector(**connector_kwargs),
            cookie_jar=aiohttp.DummyCookieJar(),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    async def _send(
        self,
        method: str,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        data: Optional[Dict] = None,
    ) -> Tuple[int, List[str], Any]:
        """Возвращает (HTTP статус, заголовки Set-Cookie, разобранное тело)"""
        if not self.session:
            raise XuiAPIError("Session not initialized. Use async context manager.")

        url = f"{self.base_url}{endpoint}"
        kwargs = {'headers': headers or {}, 'allow_redirects': False}
        if data is not None:
            kwargs['json'] = data

        try:
            async with self.session.request(method, url, **kwargs) as response:
                response_text = await response.text()
                set_cookies = response.headers.getall('Set-Cookie', [])

                try:
                    response_data = json.loads(response_text) if response_text else {}
                except json.JSONDecodeError:
                    response_data = {'raw_response': response_text}

                return response.status, set_cookies, response_data

        except asyncio.TimeoutError:
            logger.error(f"Таймаут запроса к 3x-ui: {method} {endpoint}")
            raise XuiAPIError(f"Request timed out: {method} {endpoint}")
        except aiohttp.ClientError as e:
            logger.error(f"Request failed: {e}")
            raise XuiAPIError(f"Request failed: {str(e)}")

    async def authenticate(self) -> XuiSession:
        status, set_cookies, body = await self._send(
            'POST',
            '/login',
            data={'username': self.username, 'password': self.password},
        )

        if status >= 400:
            raise XuiAuthError(f"Ошибка авторизации в 3x-ui API: HTTP {status}", status, body)

        success, message, obj = parse_envelope(body)
        if not success:
            raise XuiAuthError(message or "Неверные учетные данные 3x-ui", status, body)

        if self.auth_mode == "bearer":
            token = obj.get('token') if isinstance(obj, dict) else None
            if not token:
                raise XuiAuthError("В ответе авторизации отсутствует токен", status, body)
            logger.info("✅ Успешная авторизация в 3x-ui API (bearer)")
            return XuiSession(credential=str(token), auth_mode="bearer")

        cookie = set_cookies[0].split(';')[0].strip() if set_cookies else ''
        if not cookie:
            raise XuiAuthError("Не удалось получить cookie для авторизации в 3x-ui API", status, body)

        logger.info("✅ Успешная авторизация в 3x-ui API")
        return XuiSession(credential=cookie, auth_mode="cookie")

    @staticmethod
    def _is_auth_failure(status: int, body: Any) -> bool:
        if status in AUTH_FAILURE_STATUSES:
            return True
        # Старые версии панели отвечают редиректом на страницу входа
        return 300 <= status < 400

    async def _make_request(
        self,
        session: XuiSession,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
    ) -> Any:
        status, _, body = await self._send(method, endpoint, session.auth_headers(), data)

        if self._is_auth_failure(status, body):
            logger.warning(f"⚠️ Сессия 3x-ui недействительна (HTTP {status}), повторная авторизация")
            session.refresh(await self.authenticate())
            status, _, body = await self._send(method, endpoint, session.auth_headers(), data)
            if self._is_auth_failure(status, body):
                raise XuiAuthError(
                    f"Авторизация отклонена после повторного входа: HTTP {status}", status, body
                )

        if status >= 400:
            error_message = body.get('msg') or body.get('message') if isinstance(body, dict) else None
            error_message = error_message or f'HTTP {status}'
            logger.error(f"API Error {status}: {error_message}")
            raise XuiAPIError(error_message, status, body)

        success, message, obj = parse_envelope(body)
        if not success:
            raise XuiAPIError(message or f"Панель вернула ошибку для {endpoint}", status, body)

        return obj

    async def list_inbounds(self, session: XuiSession) -> List[XuiInbound]:
        obj = await self._make_request(session, 'GET', '/panel/api/inbounds/list')
        if not isinstance(obj, list):
            raise XuiAPIError("Не удалось получить список inbounds", response_data=obj)
        return [parse_inbound(item) for item in obj if isinstance(item, dict)]

    async def get_inbound(self, session: XuiSession, inbound_id: int) -> XuiInbound:
        obj = await self._make_request(session, 'GET', f'/panel/api/inbounds/get/{inbound_id}')
        if not isinstance(obj, dict):
            raise XuiAPIError(f"Не удалось получить информацию об inbound {inbound_id}", response_data=obj)
        return parse_inbound(obj)

    async def add_client(self, session: XuiSession, inbound_id: int, client: XuiClientSpec) -> None:
        data = {
            'id': inbound_id,
            'settings': json.dumps({'clients': [client.to_payload()]}),
        }
        await self._make_request(session, 'POST', '/panel/api/inbounds/addClient', data)
        logger.info(f"✅ Клиент {client.email} добавлен в inbound {inbound_id}")

    async def update_client(self, session: XuiSession, inbound_id: int, client: XuiClientSpec) -> None:
        data = {
            'id': inbound_id,
            'settings': json.dumps({'clients': [client.to_payload()]}),
        }
        await self._make_request(session, 'POST', f'/panel/api/inbounds/updateClient/{client.id}', data)
        logger.info(f"✅ Клиент {client.email} обновлен в inbound {inbound_id}")

    async def delete_client(self, session: XuiSession, inbound_id: int, client_id: str) -> None:
        await self._make_request(session, 'POST', f'/panel/api/inbounds/{inbound_id}/delClient/{client_id}')
        logger.info(f"🗑️ Клиент {client_id} удален из inbound {inbound_id}")

    async def reset_client_traffic(self, session: XuiSession, inbound_id: int, email: str) -> None:
        await self._make_request(
            session, 'POST', f'/panel/api/inbounds/{inbound_id}/resetClientTraffic/{email}'
        )
        logger.info(f"🔄 Сброшен трафик клиента {email} в inbound {inbound_id}")

    async def get_client_traffic_by_email(self, session: XuiSession, email: str) -> Optional[ClientTraffic]:
        try:
            obj = await self._make_request(session, 'GET', f'/panel/api/inbounds/getClientTraffics/{email}')
        except XuiAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return parse_client_traffic(obj)

    async def get_client_traffic_by_id(self, session: XuiSession, client_id: str) -> Optional[ClientTraffic]:
        try:
            obj = await self._make_request(
                session, 'GET', f'/panel/api/inbounds/getClientTrafficsById/{client_id}'
            )
        except XuiAPIError as e:
            if e.status_code == 404:
                return None
            raise

        if isinstance(obj, list):
            parsed = [item for item in (parse_client_traffic(entry) for entry in obj) if item]
            return parsed[0] if parsed else None
        return parse_client_traffic(obj)
