from __future__ import annotations

import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from formvault.service.errors import ConfigurationError
from formvault.service.identity import RealmInfo

SALT_LENGTH = 8
_SALT_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class CredentialsInfo:
    username: str
    digest_auth_hash: str
    basic_auth_hash: str
    basic_auth_salt: str


def _normalise(name: str) -> str:
    return name.strip().lower().replace("-", "").replace("_", "")


def hashlib_name(encoding: str) -> str:
    """Map a message digest name such as ``SHA-1`` to its hashlib name."""
    name = _normalise(encoding or "")
    # shake digests need an explicit output length
    candidates = {
        _normalise(alg): alg
        for alg in hashlib.algorithms_available
        if not alg.lower().startswith("shake")
    }
    if name not in candidates:
        raise ConfigurationError(
            f"unrecognized basic-auth hash encoding {encoding!r}",
            detail={"encoding": encoding},
        )
    return candidates[name]


def _basic_auth_hash(password: str, salt: str, encoding: str) -> str:
    digest = hashlib.new(hashlib_name(encoding))
    digest.update(f"{password}{{{salt}}}".encode("utf-8"))
    return digest.hexdigest()


def _digest_auth_hash(username: str, realm_string: str, password: str) -> str:
    return hashlib.md5(f"{username}:{realm_string}:{password}".encode("utf-8")).hexdigest()


def generate_salt(length: int = SALT_LENGTH) -> str:
    return "".join(secrets.choice(_SALT_ALPHABET) for _ in range(length))


def derive_credentials(
    username: str, realm: Optional[RealmInfo], password: str
) -> CredentialsInfo:
    """Build digest-auth and salted basic-auth material for ``username``.

    The digest hash is the HTTP digest HA1 value ``md5(user:realm:password)``.
    The basic hash is ``password{salt}`` run through the realm's configured
    digest and hex encoded.
    """
    if realm is None or not realm.realm_string:
        raise ConfigurationError("realm string is required to derive credentials")
    salt = generate_salt()
    return CredentialsInfo(
        username=username,
        digest_auth_hash=_digest_auth_hash(username, realm.realm_string, password),
        basic_auth_hash=_basic_auth_hash(password, salt, realm.basic_auth_hash_encoding),
        basic_auth_salt=salt,
    )


def verify_basic_auth_password(
    password: str, stored_hash: Optional[str], salt: Optional[str], encoding: str
) -> bool:
    if not stored_hash or salt is None:
        return False
    return hmac.compare_digest(_basic_auth_hash(password, salt, encoding), stored_hash)


def verify_digest_auth_password(
    username: str, realm_string: str, password: str, stored_hash: Optional[str]
) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(_digest_auth_hash(username, realm_string, password), stored_hash)
