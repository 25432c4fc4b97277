from __future__ import annotations

import logging
import uuid
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def create_user(self, profile: dict) -> str: ...

    def get_user(self, user_id: str) -> Optional[dict]: ...

    def update_user(self, user_id: str, changes: dict) -> None: ...

    def validate_session(self, token: str) -> Optional[str]: ...


class LocalIdentityProvider:
    """Stand-in provider used when no external identity service is configured.

    Issues random ids, keeps no profile state of its own and accepts no bearer
    sessions.
    """

    def create_user(self, profile: dict) -> str:
        user_id = uuid.uuid4().hex
        logger.info("Issued local user id %s", user_id)
        return user_id

    def get_user(self, user_id: str) -> Optional[dict]:
        return None

    def update_user(self, user_id: str, changes: dict) -> None:
        logger.debug("Local provider ignoring profile update for %s: %s", user_id, sorted(changes))

    def validate_session(self, token: str) -> Optional[str]:
        return None
