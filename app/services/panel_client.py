from app.config import settings
from app.external.xui_api import XuiAPI


def create_xui_api() -> XuiAPI:
    """Клиент панели из настроек; ConfigurationError, если панель не настроена"""
    settings.validate_panel_settings()
    return XuiAPI(
        timeout=settings.XUI_REQUEST_TIMEOUT,
        verify_ssl=settings.XUI_VERIFY_SSL,
        **settings.get_xui_auth_params(),
    )
