"""
Optimistic profile update as a command object.

``apply`` captures the pre-image and shows the target profile at once;
``rollback`` replays the pre-image; ``commit`` replaces it with the
confirmed user and discards the pre-image.
"""

import logging
from typing import Optional

from session_core.profiles.view_state import ActiveProfileView
from session_core.schemas import AvailableProfile, User

logger = logging.getLogger(__name__)


class OptimisticProfileCommand:

    def __init__(self, view: ActiveProfileView, target: AvailableProfile):
        self._view = view
        self._target = target
        self._pre_image: Optional[User] = None
        self._applied = False
        self._settled = False

    @property
    def is_applied(self) -> bool:
        return self._applied and not self._settled

    def apply(self) -> User:
        if self._applied:
            raise RuntimeError("Optimistic update already applied")

        self._pre_image = self._view.user
        optimistic = self._build_user()
        self._view.set_user(optimistic, optimistic=True)
        self._applied = True
        logger.debug(f"Optimistically showing profile {self._target.profileId}")
        return optimistic

    def rollback(self) -> None:
        if not self.is_applied:
            return
        self._view.set_user(self._pre_image)
        self._settled = True
        logger.info(f"Rolled back optimistic switch to {self._target.profileId}")

    def commit(self, confirmed: User) -> None:
        self._view.set_user(confirmed)
        self._pre_image = None
        self._settled = True

    def _build_user(self) -> User:
        base = self._pre_image
        is_business = self._target.type == "business"
        return User(
            id=self._target.userId,
            profileId=self._target.profileId,
            entityId=self._target.entityId,
            email=self._target.email,
            username=base.username if base and not is_business else None,
            firstName=None if is_business else (base.firstName if base else None),
            lastName=None if is_business else (base.lastName if base else None),
            businessName=self._target.businessName,
            avatarUrl=self._target.avatarUrl,
            displayName=self._target.displayName or self._target.businessName or "",
            profileType=self._target.type,
        )
