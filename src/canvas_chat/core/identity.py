"""Observable holder of the signed-in user."""

from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger()

IdentityListener = Callable[[Optional[str]], None]


class IdentityCell:
    """Current user id with change notification.

    Consumers subscribe instead of reading the identity ad hoc and must call
    the returned function on teardown.
    """

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._user_id = user_id
        self._listeners: List[IdentityListener] = []

    def get(self) -> Optional[str]:
        return self._user_id

    def set(self, user_id: Optional[str]) -> None:
        if user_id == self._user_id:
            return
        self._user_id = user_id
        logger.info("identity_changed", signed_in=user_id is not None)
        for listener in list(self._listeners):
            try:
                listener(user_id)
            except Exception as e:
                logger.error("identity_listener_failed", error=str(e))

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)
