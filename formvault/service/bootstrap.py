from __future__ import annotations

from typing import List, Optional

from formvault.config import Settings
from formvault.logging import get_logger
from formvault.service.authorities import (
    ROLE_DATA_COLLECTOR,
    ROLE_DATA_VIEWER,
    GrantedAuthorities,
)
from formvault.service.credentials import derive_credentials
from formvault.service.identity import IdentityService, RealmInfo
from formvault.service.preferences import ServerPreferences
from formvault.service.revisions import SecurityRevisions
from formvault.service.users import RegisteredUser, RegisteredUsers

logger = get_logger(__name__)


class SuperUserBootstrap:
    """Makes sure the configured super-users exist with usable credentials.

    Runs at startup and on demand. A local super-user gets fresh password
    material whenever it is created or the realm differs from the last one
    recorded in the server preferences; derived hashes depend on the realm,
    so stale ones could never verify.
    """

    def __init__(
        self,
        settings: Settings,
        identity: IdentityService,
        users: RegisteredUsers,
        authorities: GrantedAuthorities,
        preferences: ServerPreferences,
        revisions: SecurityRevisions,
    ):
        self.settings = settings
        self.identity = identity
        self.users = users
        self.authorities = authorities
        self.preferences = preferences
        self.revisions = revisions

    def assert_super_users(self) -> List[RegisteredUser]:
        super_users: List[RegisteredUser] = []
        changes_made = False
        try:
            email = self.identity.super_user_email()
            if email is not None:
                user = self.users.find_by_email(email.email)
                if user is None:
                    user = self.users.create_user(
                        username=None, email=email.email, full_name=email.full_name
                    )
                    changes_made = True
                    logger.warning(
                        "super_user_email_record_created", uri=user.uri, email=user.email
                    )
                super_users.append(user)

            username = self.identity.super_user_username()
            if username is not None:
                user = self.users.find_by_username(username)
                new_user = user is None
                if new_user:
                    user = self.users.create_user(
                        username=username, email=None, full_name=username
                    )
                    changes_made = True
                    logger.warning(
                        "super_user_username_record_created",
                        uri=user.uri,
                        username=user.username,
                    )
                reset = self._reset_super_user_password_if_necessary(user, new_user)
                changes_made = reset or changes_made
                super_users.append(user)
        finally:
            if changes_made:
                self.revisions.set_last_super_user_id_revision_date()
        logger.info("super_users_asserted", count=len(super_users), changed=changes_made)
        return super_users

    def _reset_super_user_password_if_necessary(
        self, user: RegisteredUser, new_user: bool
    ) -> bool:
        realm = self.identity.current_realm()
        last_known_realm = self.preferences.get_last_known_realm_string()
        self.ensure_data_collector(realm)
        if not new_user and last_known_realm is not None and last_known_realm == realm.realm_string:
            return False

        credentials = derive_credentials(
            user.username, realm, self.settings.bootstrap_password
        )
        user.digest_auth_password = credentials.digest_auth_hash
        user.basic_auth_password = credentials.basic_auth_hash
        user.basic_auth_salt = credentials.basic_auth_salt
        self.users.save(user)
        self.preferences.set_last_known_realm_string(realm.realm_string)
        logger.warning(
            "super_user_password_reset",
            uri=user.uri,
            username=user.username,
            realm=realm.realm_string,
            previous_realm=last_known_realm,
        )
        return True

    def ensure_data_collector(self, realm: Optional[RealmInfo] = None) -> Optional[RegisteredUser]:
        """Create the data-collector service account if it does not exist yet."""
        username = self.settings.data_collector_username
        if not username:
            return None
        user = self.users.find_by_username(username)
        if user is not None:
            return user

        realm = realm or self.identity.current_realm()
        credentials = derive_credentials(username, realm, self.settings.bootstrap_password)
        user = self.users.create_user(
            username=username,
            email=None,
            full_name=self.settings.data_collector_full_name,
        )
        user.digest_auth_password = credentials.digest_auth_hash
        user.basic_auth_password = credentials.basic_auth_hash
        user.basic_auth_salt = credentials.basic_auth_salt
        self.users.save(user)
        self.authorities.grant(user.uri, ROLE_DATA_COLLECTOR)
        self.authorities.grant(user.uri, ROLE_DATA_VIEWER)
        logger.warning("data_collector_created", uri=user.uri, username=username)
        return user
