"""
UI-facing view of the active profile.

Holds the User projection the presentation layer renders. It may briefly
show optimistic data during a profile switch; ``is_optimistic`` says so.
"""

import logging
from typing import Callable, List, Optional

from session_core.schemas import User

logger = logging.getLogger(__name__)

ViewListener = Callable[[Optional[User], bool], None]


class ActiveProfileView:

    def __init__(self):
        self._user: Optional[User] = None
        self._optimistic = False
        self._listeners: List[ViewListener] = []

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def is_optimistic(self) -> bool:
        return self._optimistic

    def set_user(self, user: Optional[User], optimistic: bool = False) -> None:
        self._user = user
        self._optimistic = optimistic
        for listener in list(self._listeners):
            try:
                listener(user, optimistic)
            except Exception:
                logger.exception("Active profile listener failed")

    def on_change(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
