from __future__ import annotations

from mailcourier.core.config import Settings, get_settings
from mailcourier.core.errors import ConfigurationError
from mailcourier.providers.email.base import EmailTransport
from mailcourier.providers.email.fake_email import FakeEmailTransport
from mailcourier.providers.email.smtp import SmtpEmailTransport, SmtpServer


def _require(value: str | None, env_name: str, provider: str) -> str:
    if not value:
        raise ConfigurationError(f"{env_name} is required when EMAIL_PROVIDER={provider}")
    return value


def preset_server(provider: str, settings: Settings) -> SmtpServer:
    """Resolve a hosted relay preset to concrete SMTP connection parameters.

    SendGrid authenticates with the literal user ``apikey`` and the API key as
    password. Gmail needs an app password and is reached over implicit TLS.
    """
    if provider == "sendgrid":
        return SmtpServer(
            host="smtp.sendgrid.net",
            port=587,
            username="apikey",
            password=_require(settings.sendgrid_api_key, "SENDGRID_API_KEY", provider),
            start_tls=True,
        )
    if provider == "mailgun":
        return SmtpServer(
            host="smtp.mailgun.org",
            port=587,
            username=_require(settings.mailgun_username, "MAILGUN_USERNAME", provider),
            password=_require(settings.mailgun_password, "MAILGUN_PASSWORD", provider),
            start_tls=True,
        )
    if provider == "gmail":
        return SmtpServer(
            host="smtp.gmail.com",
            port=465,
            username=_require(settings.gmail_user, "GMAIL_USER", provider),
            password=_require(settings.gmail_app_password, "GMAIL_APP_PASSWORD", provider),
            use_tls=True,
        )
    raise ConfigurationError(f"Unsupported email provider: {provider}")


def get_email_transport() -> EmailTransport:
    settings = get_settings()
    provider = (settings.email_provider or "smtp").lower()

    if provider == "fake":
        return FakeEmailTransport()
    if provider == "smtp":
        return SmtpEmailTransport(settings)

    return SmtpEmailTransport(settings, server=preset_server(provider, settings))
