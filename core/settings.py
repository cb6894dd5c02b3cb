import os
from dataclasses import dataclass


DEFAULT_ALERTABLE_REASONS = frozenset({"mentioned", "watched"})


def _get_env(*keys: str, default=None):
    for key in keys:
        value = os.getenv(key)
        if value is not None and value != "":
            return value
    return default


def _get_bool(*keys: str, default: bool) -> bool:
    value = _get_env(*keys)
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_reasons(raw: str | None) -> frozenset[str]:
    if not raw:
        return DEFAULT_ALERTABLE_REASONS
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


def _join(base: str, suffix: str) -> str:
    return f"{base.rstrip('/')}/{suffix}"


@dataclass(frozen=True)
class Settings:
    api_base_url: str
    oauth_base_url: str
    client_id: str | None
    client_secret: str | None
    redirect_uri: str
    oauth_scope: str
    state_backend: str
    credential_namespace: str
    token_ca_bundle: str | None
    request_timeout: tuple[float, float]
    refresh_threshold: int = 300
    foreground_interval: int = 300
    background_interval: int = 30
    alertable_reasons: frozenset[str] = DEFAULT_ALERTABLE_REASONS
    sync_secret: str | None = None
    autostart_driver: bool = False
    table_name: str = "openprojectcredentials"


def load_settings() -> Settings:
    server_url = _get_env("OPENPROJECT_URL", default="https://openproject.example.com")
    return Settings(
        api_base_url=str(_get_env("OPENPROJECT_API_URL", default=_join(server_url, "api/v3"))),
        oauth_base_url=str(_get_env("OPENPROJECT_OAUTH_URL", default=_join(server_url, "oauth"))),
        client_id=_get_env("OPENPROJECT_CLIENT_ID", "OPENPROJECTCLIENTID"),
        client_secret=_get_env("OPENPROJECT_CLIENT_SECRET", "OPENPROJECTCLIENTSECRET"),
        redirect_uri=str(_get_env("OPENPROJECT_REDIRECT_URI", default="http://localhost:8080/callback")),
        oauth_scope=str(_get_env("OPENPROJECT_SCOPE", default="api_v3")),
        state_backend=str(_get_env("STATE_BACKEND", default="memory")),
        credential_namespace=str(_get_env("CREDENTIAL_NAMESPACE", default="openproject")),
        token_ca_bundle=_get_env("TOKEN_CA_BUNDLE"),
        request_timeout=(3.05, 10),
        refresh_threshold=int(_get_env("REFRESH_THRESHOLD", default=300)),
        foreground_interval=int(_get_env("FOREGROUND_INTERVAL", default=300)),
        background_interval=int(_get_env("BACKGROUND_INTERVAL", default=30)),
        alertable_reasons=_parse_reasons(_get_env("ALERTABLE_REASONS")),
        sync_secret=_get_env("SYNC_SECRET", "SYNCSECRET"),
        autostart_driver=_get_bool("AUTOSTART_DRIVER", default=False),
        table_name=str(_get_env("TABLE_NAME", default="openprojectcredentials")),
    )
