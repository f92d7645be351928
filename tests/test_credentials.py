import hashlib
import string

import pytest

from formvault.service.credentials import (
    derive_credentials,
    hashlib_name,
    verify_basic_auth_password,
    verify_digest_auth_password,
)
from formvault.service.errors import ConfigurationError
from formvault.service.identity import RealmInfo


def test_digest_hash_is_http_digest_ha1():
    creds = derive_credentials("alice", RealmInfo("R1"), "secret")
    expected = hashlib.md5(b"alice:R1:secret").hexdigest()
    assert creds.digest_auth_hash == expected


def test_basic_hash_uses_salted_sha1_by_default():
    creds = derive_credentials("alice", RealmInfo("R1"), "secret")
    salt = creds.basic_auth_salt
    assert len(salt) == 8
    assert set(salt) <= set(string.ascii_letters + string.digits)
    expected = hashlib.sha1(f"secret{{{salt}}}".encode()).hexdigest()
    assert creds.basic_auth_hash == expected


def test_alternate_algorithm_names_accepted():
    creds = derive_credentials("alice", RealmInfo("R1", "SHA-256"), "secret")
    salt = creds.basic_auth_salt
    assert creds.basic_auth_hash == hashlib.sha256(f"secret{{{salt}}}".encode()).hexdigest()
    assert hashlib_name("md5") == "md5"


def test_salt_changes_between_derivations():
    salts = {derive_credentials("alice", RealmInfo("R1"), "pw").basic_auth_salt for _ in range(10)}
    assert len(salts) > 1


def test_unknown_algorithm_is_configuration_error():
    with pytest.raises(ConfigurationError):
        derive_credentials("alice", RealmInfo("R1", "NOT-A-DIGEST"), "secret")


def test_missing_realm_is_configuration_error():
    with pytest.raises(ConfigurationError):
        derive_credentials("alice", None, "secret")
    with pytest.raises(ConfigurationError):
        derive_credentials("alice", RealmInfo(""), "secret")


def test_verification_helpers():
    creds = derive_credentials("alice", RealmInfo("R1"), "secret")
    assert verify_basic_auth_password("secret", creds.basic_auth_hash, creds.basic_auth_salt, "SHA-1")
    assert not verify_basic_auth_password("wrong", creds.basic_auth_hash, creds.basic_auth_salt, "SHA-1")
    assert not verify_basic_auth_password("secret", None, None, "SHA-1")
    assert verify_digest_auth_password("alice", "R1", "secret", creds.digest_auth_hash)
    assert not verify_digest_auth_password("alice", "R2", "secret", creds.digest_auth_hash)
