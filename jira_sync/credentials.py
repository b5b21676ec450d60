"""Credential resolution for the Jira integration.

Turns the settings a user (and optionally an admin) persisted into one
normalized :class:`Credentials` value. Resolution is pure: no I/O, no
caching, identical input always yields identical output.
"""

from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, Field

from .board_ids import parse_board_id_list
from .settings import DEFAULT_REQUEST_TIMEOUT_MS

ATLASSIAN_API_BASE = "https://api.atlassian.com/ex/jira"


class ConfigurationError(Exception):
    """Raised when Jira credentials cannot be resolved from stored settings."""

    def __init__(self, missing: str):
        self.missing = missing
        super().__init__(f"Jira integration not configured: missing {missing}")


# --- Stored settings ---


class IntegrationSettings(BaseModel):
    """Jira settings as persisted for a user."""

    jira_base_url: str | None = None
    jira_user: str | None = None
    jira_api_token: str | None = None
    jira_auth_type: str | None = None
    jira_deployment: str | None = None
    jira_board_ids: str | None = None
    jira_sprint_field_id: str | None = None
    jira_request_timeout: int | None = None
    jira_access_token: str | None = None
    jira_cloud_id: str | None = None

    class Config:
        from_attributes = True


# --- Resolved credentials (tagged by auth_type) ---


class BasicAuth(BaseModel):
    """Username plus API token or password."""

    auth_type: Literal["basic"] = "basic"
    user: str
    token: str


class BearerAuth(BaseModel):
    """Personal access token sent as a bearer token."""

    auth_type: Literal["bearer"] = "bearer"
    token: str


class OAuthAuth(BaseModel):
    """Atlassian OAuth 2.0 (3LO) access token."""

    auth_type: Literal["oauth"] = "oauth"
    token: str
    cloud_id: str


AuthScheme = Union[BasicAuth, BearerAuth, OAuthAuth]


class Credentials(BaseModel):
    """Everything the fetch layer needs to talk to one Jira instance."""

    base_url: str
    auth: AuthScheme = Field(discriminator="auth_type")
    deployment: Literal["cloud", "datacenter"] = "cloud"
    board_ids: list[int] | None = None
    sprint_field_id: str | None = None
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT_MS

    class Config:
        frozen = True

    @property
    def auth_type(self) -> str:
        return self.auth.auth_type

    @property
    def token(self) -> str:
        return self.auth.token

    @property
    def user(self) -> str | None:
        return self.auth.user if isinstance(self.auth, BasicAuth) else None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _unique(ids: list[int] | None) -> list[int] | None:
    if not ids:
        return None
    return list(dict.fromkeys(ids))


def resolve_credentials(
    settings: IntegrationSettings,
    base_url_override: str | None = None,
    default_base_url: str | None = None,
) -> Credentials:
    """Resolve stored settings into :class:`Credentials`.

    Precedence:

    1. An OAuth access token together with a cloud id always wins. The base
       URL is synthesized from the cloud id and any stored URL or token is
       ignored.
    2. Otherwise the stored auth type (``bearer`` if set, else ``basic``)
       and deployment (``datacenter`` if set, else ``cloud``) are used with
       the first of: admin override, user URL, configured default.

    Raises:
        ConfigurationError: no base URL, no token, or basic auth without a
            user.
    """
    board_ids = _unique(parse_board_id_list(settings.jira_board_ids))
    sprint_field_id = _clean(settings.jira_sprint_field_id)
    request_timeout = settings.jira_request_timeout or DEFAULT_REQUEST_TIMEOUT_MS

    access_token = _clean(settings.jira_access_token)
    cloud_id = _clean(settings.jira_cloud_id)
    if access_token and cloud_id:
        return Credentials(
            base_url=f"{ATLASSIAN_API_BASE}/{cloud_id}",
            auth=OAuthAuth(token=access_token, cloud_id=cloud_id),
            deployment="cloud",
            board_ids=board_ids,
            sprint_field_id=sprint_field_id,
            request_timeout=request_timeout,
        )

    auth_type = "bearer" if _clean(settings.jira_auth_type) == "bearer" else "basic"
    deployment = "datacenter" if _clean(settings.jira_deployment) == "datacenter" else "cloud"

    base_url = (
        _clean(base_url_override)
        or _clean(settings.jira_base_url)
        or _clean(default_base_url)
    )
    if not base_url:
        raise ConfigurationError("base URL")

    token = _clean(settings.jira_api_token)
    if not token:
        raise ConfigurationError("API token")

    auth: AuthScheme
    if auth_type == "bearer":
        auth = BearerAuth(token=token)
    else:
        user = _clean(settings.jira_user)
        if not user:
            raise ConfigurationError("username for basic authentication")
        auth = BasicAuth(user=user, token=token)

    return Credentials(
        base_url=base_url.rstrip("/"),
        auth=auth,
        deployment=deployment,
        board_ids=board_ids,
        sprint_field_id=sprint_field_id,
        request_timeout=request_timeout,
    )


def with_board_ids(credentials: Credentials, board_ids: list[int] | None) -> Credentials:
    """Return a copy with ``board_ids`` replaced; no-op for an empty override."""
    if not board_ids:
        return credentials
    return credentials.model_copy(update={"board_ids": _unique(board_ids)})
