from __future__ import annotations

from dataclasses import dataclass
from email.utils import parseaddr
from typing import Optional

from formvault.config import Settings
from formvault.service.errors import ConfigurationError, ValidationError
from formvault.storage.datastore import DAEMON_PRINCIPAL, Principal

MAILTO_PREFIX = "mailto:"


@dataclass(frozen=True)
class Email:
    """A ``mailto:`` address and the display name parsed alongside it."""

    email: str
    full_name: str


def parse_email(raw: str) -> Email:
    """Normalise ``Name <user@host>``, ``user@host`` or ``mailto:user@host``.

    The full name falls back to the local part of the address.
    """
    value = (raw or "").strip()
    if value.lower().startswith(MAILTO_PREFIX):
        value = value[len(MAILTO_PREFIX):]
    name, address = parseaddr(value)
    if not address or "@" not in address:
        raise ValidationError(
            "invalid email address", detail={"email": raw}
        )
    full_name = name.strip() or address.split("@", 1)[0]
    return Email(email=f"{MAILTO_PREFIX}{address}", full_name=full_name)


@dataclass(frozen=True)
class UserIdentity:
    """An externally verified identity presented at login."""

    username: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None


@dataclass(frozen=True)
class RealmInfo:
    realm_string: Optional[str]
    basic_auth_hash_encoding: str = "SHA-1"


class IdentityService:
    """Supplies the configured super-users, the daemon principal and the realm."""

    def __init__(self, settings: Settings, daemon: Principal = DAEMON_PRINCIPAL):
        self.settings = settings
        self._daemon = daemon

    @property
    def daemon_principal(self) -> Principal:
        return self._daemon

    def super_user_email(self) -> Optional[Email]:
        raw = self.settings.super_user_email
        if not raw:
            return None
        try:
            return parse_email(raw)
        except ValidationError as exc:
            raise ConfigurationError(
                "SUPER_USER_EMAIL is not a valid address", detail=exc.detail
            ) from exc

    def super_user_username(self) -> Optional[str]:
        return self.settings.super_user_username

    def current_realm(self) -> RealmInfo:
        if not self.settings.realm_string:
            raise ConfigurationError("authentication realm is not configured")
        return RealmInfo(
            realm_string=self.settings.realm_string,
            basic_auth_hash_encoding=self.settings.basic_auth_hash_encoding,
        )
