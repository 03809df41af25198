import logging
import os
from typing import Optional

from pos_models import ModelDecodeError, User, decode_user, encode_user
from pos_store import KeyValueStore

logger = logging.getLogger(__name__)

USER_KEY = "quickbill_user_profile"


def user_storage_key() -> str:
    return os.environ.get("QUICKBILL_USER_KEY") or USER_KEY


class ProfileHolder:
    """
    The single local operator profile plus an in-process "logged in" flag.

    This is a till gate, not an access control layer: the PIN is kept as
    plain text and never checked against anything.
    """

    def __init__(self, store: KeyValueStore, key: Optional[str] = None):
        self.store = store
        self.key = key or user_storage_key()
        self.current_user: Optional[User] = None
        self.is_authenticated = False

    @property
    def existing_user(self) -> Optional[User]:
        return self.current_user

    def load(self) -> Optional[User]:
        """Restore the saved profile for prefill. Does not authenticate."""
        raw = self.store.get(self.key)
        if not raw:
            return None
        try:
            self.current_user = decode_user(raw)
        except ModelDecodeError as exc:
            logger.warning("Saved operator profile could not be read: %s", exc)
            self.current_user = None
        return self.current_user

    def login(self, user: User) -> User:
        self.store.set(self.key, encode_user(user))
        self.current_user = user
        self.is_authenticated = True
        logger.info("Operator %s logged in", user.phone)
        return user

    def logout(self) -> None:
        # The stored profile stays so the next login can be prefilled
        self.is_authenticated = False

    @property
    def phone(self) -> Optional[str]:
        return self.current_user.phone if self.current_user else None
