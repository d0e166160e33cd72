from __future__ import annotations

from typing import Callable

from calmirror.config_manager import ConfigManager


class CredentialProvider:
    """Boundary to the external auth service. Token refresh happens on its side."""

    def get_access_token(self, user_id: str) -> str | None:
        raise NotImplementedError

    def is_authenticated(self, user_id: str) -> bool:
        return bool(self.get_access_token(user_id))

    def token_getter(self, user_id: str) -> Callable[[], str | None]:
        return lambda: self.get_access_token(user_id)


class ConfigCredentialProvider(CredentialProvider):
    """Reads bearer tokens the auth service drops into the ``credentials`` config section."""

    def __init__(self, config_manager: ConfigManager) -> None:
        self.config_manager = config_manager

    def get_access_token(self, user_id: str) -> str | None:
        token = self.config_manager.load().credentials.get(str(user_id).strip(), "")
        return token or None


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self.tokens = dict(tokens or {})

    def get_access_token(self, user_id: str) -> str | None:
        return self.tokens.get(user_id) or None
