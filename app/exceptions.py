"""
Доменные исключения сервиса VPN-аккаунтов.
Ошибки 3x-ui API описаны рядом с клиентом в app.external.xui_api.
"""
from typing import Optional


class VpnServiceError(Exception):
    """Базовое исключение для всех ошибок сервиса."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(VpnServiceError):
    """Пользователь, подписка, тариф или аккаунт не найдены."""


class ConfigurationError(VpnServiceError):
    """Не заданы или некорректны настройки подключения к панели."""


class InvalidStatusTransitionError(VpnServiceError):

    def __init__(self, entity: str, current: str, target: str, reason: Optional[str] = None):
        self.entity = entity
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Недопустимый переход {entity}: {current} -> {target}"
        if reason:
            message = f"{message} (причина: {reason})"
        super().__init__(message)


class ProvisioningError(VpnServiceError):
    """Составная ошибка при создании или реактивации VPN-аккаунта."""

    def __init__(self, message: str, step: Optional[str] = None):
        self.step = step
        super().__init__(message)
