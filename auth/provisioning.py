"""
auth/provisioning.py -- Create local users on first sight of a trusted proxy identity.

Invoked only from the proxy branch of IdentityResolver, never from session
or password flows.

A provisioned user is an ordinary users row: same UNIQUE username, same
group column, a credential column holding an unusable placeholder (see
auth/passwords.py). Nothing downstream needs to know where the row came
from.

Concurrency: two first requests for the same new username can race, within
one process or across processes sharing the store. There is no application
lock. The UNIQUE constraint on users.username admits exactly one INSERT; the
loser gets IntegrityError, which here means "someone else just created it"
and is answered by re-fetching the winner's row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.passwords import make_unusable_password
from auth.store import UserStore

logger = logging.getLogger("homeboard.auth.provisioning")


class ProvisioningError(RuntimeError):
    """The user could neither be found nor created."""


class UserProvisioner:
    """Look up or create the user behind a proxy-asserted username.

    default_group is a callable so the group is read from the current
    configuration at provisioning time, not frozen at construction.
    """

    def __init__(self, users: UserStore, default_group: Callable[[], str]) -> None:
        self.users = users
        self._default_group = default_group

    def ensure_user(self, username: str, email: str | None = None) -> User:
        user = self.users.get_by_username(username)
        if user is not None:
            return user

        group_id = self._default_group()
        candidate = User(
            username=username,
            email=email or None,
            hashed_password=make_unusable_password(),
            group_id=group_id,
        )
        try:
            user_id = self.users.create_user(candidate)
        except IntegrityError as exc:
            logger.debug("Concurrent provisioning of %r detected; re-fetching", username)
            user = self.users.get_by_username(username)
            if user is None:
                # The constraint fired for a reason other than this username.
                raise ProvisioningError(f"Could not provision user {username!r}") from exc
            return user

        logger.info("Auto-provisioned proxy user %r (group=%s)", username, group_id)
        created = self.users.get_by_id(user_id)
        if created is None:
            raise ProvisioningError(f"User {username!r} vanished after creation")
        return created
