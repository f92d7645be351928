from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from formvault.logging import get_logger
from formvault.service.authorities import GrantedAuthorities
from formvault.service.errors import ValidationError
from formvault.service.identity import MAILTO_PREFIX, UserIdentity, parse_email
from formvault.storage.datastore import Direction, FilterOperation, Principal, Query
from formvault.storage.entity import Entity
from formvault.storage.errors import ConstraintViolation, EntityNotFound, IllegalStateTransition
from formvault.storage.fields import URI, DataField, DataType, IndexType
from formvault.storage.relation import Relation, RelationDef, RelationRegistry

logger = get_logger(__name__)

UID_PREFIX = "uid:"

LOCAL_USERNAME = DataField(
    "LOCAL_USERNAME", DataType.STRING, nullable=True, max_length=80, index=IndexType.ORDERED
)
OAUTH2_EMAIL = DataField(
    "OAUTH2_EMAIL", DataType.STRING, nullable=True, max_length=80, index=IndexType.ORDERED
)
FULL_NAME = DataField("FULL_NAME", DataType.STRING, nullable=True)
BASIC_AUTH_PASSWORD = DataField("BASIC_AUTH_PASSWORD", DataType.STRING, nullable=True)
BASIC_AUTH_SALT = DataField("BASIC_AUTH_SALT", DataType.STRING, nullable=True, max_length=8)
DIGEST_AUTH_PASSWORD = DataField("DIGEST_AUTH_PASSWORD", DataType.STRING, nullable=True)
IS_REMOVED = DataField("IS_REMOVED", DataType.BOOLEAN, nullable=False, default=False)


class RegisteredUser(Entity):
    """A registered user row.

    ``is_removed`` only moves from ``False`` to ``True``. A retired username
    or email comes back as a new row with a new URI.
    """

    @property
    def username(self) -> Optional[str]:
        return self.get_field(LOCAL_USERNAME)

    @username.setter
    def username(self, value: Optional[str]) -> None:
        self.set_string_field(LOCAL_USERNAME, value)

    @property
    def email(self) -> Optional[str]:
        return self.get_field(OAUTH2_EMAIL)

    @email.setter
    def email(self, value: Optional[str]) -> None:
        if value is not None and not value.startswith(MAILTO_PREFIX):
            raise ConstraintViolation(
                "email must be a mailto: address",
                {"relation": self.relation.table_name, "field": OAUTH2_EMAIL.name},
            )
        self.set_string_field(OAUTH2_EMAIL, value)

    @property
    def full_name(self) -> Optional[str]:
        return self.get_field(FULL_NAME)

    @full_name.setter
    def full_name(self, value: Optional[str]) -> None:
        self.set_string_field(FULL_NAME, value)

    @property
    def basic_auth_password(self) -> Optional[str]:
        return self.get_field(BASIC_AUTH_PASSWORD)

    @basic_auth_password.setter
    def basic_auth_password(self, value: Optional[str]) -> None:
        self.set_string_field(BASIC_AUTH_PASSWORD, value)

    @property
    def basic_auth_salt(self) -> Optional[str]:
        return self.get_field(BASIC_AUTH_SALT)

    @basic_auth_salt.setter
    def basic_auth_salt(self, value: Optional[str]) -> None:
        self.set_string_field(BASIC_AUTH_SALT, value)

    @property
    def digest_auth_password(self) -> Optional[str]:
        return self.get_field(DIGEST_AUTH_PASSWORD)

    @digest_auth_password.setter
    def digest_auth_password(self, value: Optional[str]) -> None:
        self.set_string_field(DIGEST_AUTH_PASSWORD, value)

    @property
    def is_removed(self) -> bool:
        return bool(self.get_field(IS_REMOVED))

    @is_removed.setter
    def is_removed(self, value: bool) -> None:
        if self.is_removed and not value:
            raise IllegalStateTransition(
                "a removed user cannot be reinstated",
                {"relation": self.relation.table_name, "uri": self.uri},
            )
        self.set_boolean_field(IS_REMOVED, bool(value))

    @property
    def display_name(self) -> Optional[str]:
        return self.email if self.email is not None else self.username


REGISTERED_USERS = RelationDef(
    "_registered_users",
    (
        LOCAL_USERNAME,
        OAUTH2_EMAIL,
        FULL_NAME,
        BASIC_AUTH_PASSWORD,
        BASIC_AUTH_SALT,
        DIGEST_AUTH_PASSWORD,
        IS_REMOVED,
    ),
    entity_class=RegisteredUser,
)

_uri_lock = threading.Lock()
_last_uri_stamp: Optional[datetime] = None


def _next_uri_stamp() -> datetime:
    global _last_uri_stamp
    with _uri_lock:
        now = datetime.now(timezone.utc)
        if _last_uri_stamp is not None and now <= _last_uri_stamp:
            now = _last_uri_stamp + timedelta(microseconds=1)
        _last_uri_stamp = now
        return now


def generate_unique_uri(username: Optional[str], email: Optional[str]) -> str:
    """Build ``uid:<username-or-email>|<ISO-8601 timestamp>``.

    The username wins when both are given; an email contributes its address
    without the ``mailto:`` scheme. The name part is shortened so the whole
    URI fits the 80 character key column.
    """
    if username is not None:
        name = username
    elif email is not None:
        name = email[len(MAILTO_PREFIX):] if email.startswith(MAILTO_PREFIX) else email
    else:
        raise ValidationError("a username or an email is required to build a user URI")
    stamp = _next_uri_stamp().isoformat()
    room = URI.max_length - len(UID_PREFIX) - len(stamp) - 1
    return f"{UID_PREFIX}{name[:room]}|{stamp}"


class RegisteredUsers:
    """Registered users with soft uniqueness on username and on email.

    No storage constraint keeps usernames or emails unique. Every keyed
    lookup repairs duplicates it sees: the most recently updated active row
    survives and the others lose their grants and are marked removed.
    """

    def __init__(
        self,
        registry: RelationRegistry,
        authorities: GrantedAuthorities,
        principal: Optional[Principal] = None,
    ):
        self.registry = registry
        self.authorities = authorities
        self.principal = principal or registry.principal

    @property
    def _datastore(self):
        return self.registry.datastore

    def _relation(self) -> Relation:
        return self.registry.get_or_create(REGISTERED_USERS)

    def _active_query(self, relation: Relation, tag: str) -> Query:
        query = self._datastore.create_query(relation, tag, self.principal)
        query.add_filter(IS_REMOVED, FilterOperation.EQUAL, False)
        return query

    def _find_active(self, key_field: DataField, value: str, tag: str) -> List[RegisteredUser]:
        relation = self._relation()
        query = self._active_query(relation, tag)
        query.add_filter(key_field, FilterOperation.EQUAL, value)
        # key sort keeps ordering deterministic on weakly ordered backends
        query.add_sort(key_field, Direction.ASCENDING)
        query.add_sort(relation.last_update_date, Direction.DESCENDING)
        return query.execute()

    def reconcile_duplicates(
        self,
        rows: Sequence[RegisteredUser],
        key_field: DataField,
        key_value: str,
    ) -> Optional[RegisteredUser]:
        """Collapse active rows sharing ``key_value`` onto the newest one.

        Each older row has its authority grants deleted and is then marked
        removed and persisted. Rows already removed are ignored, so running
        this again over the same rows changes nothing.
        """
        active = [row for row in rows if not row.is_removed]
        if not active:
            return None
        ordered = sorted(
            active,
            key=lambda row: row.last_update_date or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        canonical = ordered[0]
        for duplicate in ordered[1:]:
            self.authorities.delete_for_user(duplicate.uri)
            duplicate.is_removed = True
            self._datastore.put_entity(duplicate, self.principal)
            logger.warning(
                "duplicate_user_marked_removed",
                key_field=key_field.name,
                key_value=key_value,
                uri=duplicate.uri,
                canonical_uri=canonical.uri,
            )
        return canonical

    def find_by_username(self, username: str) -> Optional[RegisteredUser]:
        rows = self._find_active(LOCAL_USERNAME, username, "RegisteredUsers.find_by_username")
        return self.reconcile_duplicates(rows, LOCAL_USERNAME, username)

    def find_by_email(self, email: str) -> Optional[RegisteredUser]:
        rows = self._find_active(OAUTH2_EMAIL, email, "RegisteredUsers.find_by_email")
        return self.reconcile_duplicates(rows, OAUTH2_EMAIL, email)

    def find_unique_by_username(self, username: str) -> Optional[RegisteredUser]:
        rows = self._find_active(
            LOCAL_USERNAME, username, "RegisteredUsers.find_unique_by_username"
        )
        return rows[0] if len(rows) == 1 else None

    def find_unique_by_email(self, email: str) -> Optional[RegisteredUser]:
        rows = self._find_active(OAUTH2_EMAIL, email, "RegisteredUsers.find_unique_by_email")
        return rows[0] if len(rows) == 1 else None

    def get_by_uri(self, uri: str) -> Optional[RegisteredUser]:
        try:
            return self._datastore.get_entity(self._relation(), uri, self.principal)
        except EntityNotFound:
            return None

    def list_active(self) -> List[RegisteredUser]:
        relation = self._relation()
        query = self._active_query(relation, "RegisteredUsers.list_active")
        query.add_sort(relation.primary_key, Direction.ASCENDING)
        return query.execute()

    def create_user(
        self,
        username: Optional[str] = None,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> RegisteredUser:
        """Insert a new active row. Existing rows for the same name are untouched."""
        if username is None and email is None:
            raise ValidationError("a username or an email is required")
        relation = self._relation()
        user: RegisteredUser = self._datastore.create_entity(relation, self.principal)
        user.set_string_field(URI, generate_unique_uri(username, email))
        user.username = username
        user.email = email
        user.full_name = full_name
        user.is_removed = False
        self._datastore.put_entity(user, self.principal)
        logger.info("registered_user_created", uri=user.uri, username=username, email=email)
        return user

    def save(self, user: RegisteredUser) -> None:
        self._datastore.put_entity(user, self.principal)

    def mark_removed(self, user: RegisteredUser) -> None:
        if user.is_removed:
            return
        self.authorities.delete_for_user(user.uri)
        user.is_removed = True
        self._datastore.put_entity(user, self.principal)
        logger.info("registered_user_removed", uri=user.uri)

    def upsert_from_identity_assertion(self, identity: UserIdentity) -> RegisteredUser:
        """Create or refresh the local row for an externally verified identity.

        The username is the lookup key when present, otherwise the email. An
        existing row only has its full name refreshed; credentials stay as
        they are.
        """
        username = identity.username or None
        email = parse_email(identity.email).email if identity.email else None
        if username is None and email is None:
            raise ValidationError("identity assertion needs a username or an email")

        if username is not None:
            user = self.find_by_username(username)
        else:
            user = self.find_by_email(email)

        if user is None:
            return self.create_user(username=username, email=email, full_name=identity.full_name)

        user.full_name = identity.full_name
        self._datastore.put_entity(user, self.principal)
        logger.info("registered_user_refreshed", uri=user.uri)
        return user
