"""
Session Identity

Holds the authenticated user id that every cache key and realtime
channel is namespaced by.

DESIGN DECISION: Identity-change hooks run sequentially, in the order
they were registered, and each is awaited before the next starts.
Realtime teardown registers first so that subscriptions bound to the
previous identity are closed before anything is opened or purged.
"""

from typing import Awaitable, Callable, Optional

import structlog

from ledgersync.audit import AuditLogger


logger = structlog.get_logger(__name__)


# Called with (previous_user_id, new_user_id)
IdentityHook = Callable[[Optional[str], Optional[str]], Awaitable[None]]


class Session:
    """
    The current authenticated identity.

    With no user, every user-scoped component is a no-op.
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._user_id = user_id or None
        self._hooks: list[IdentityHook] = []
        self._audit_logger = audit_logger

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_authenticated(self) -> bool:
        return self._user_id is not None

    def on_identity_change(self, hook: IdentityHook) -> Callable[[], None]:
        """
        Register a hook for identity changes.

        Returns:
            A function that unregisters the hook
        """
        self._hooks.append(hook)

        def unregister() -> None:
            if hook in self._hooks:
                self._hooks.remove(hook)

        return unregister

    async def sign_in(self, user_id: str) -> None:
        """Switch to an authenticated user."""
        if not user_id:
            raise ValueError("user_id is required to sign in")
        await self._switch(user_id)

    async def sign_out(self) -> None:
        """Drop the current identity. Hooks purge the previous user's local data."""
        await self._switch(None)

    async def _switch(self, user_id: Optional[str]) -> None:
        previous = self._user_id
        if previous == user_id:
            return

        self._user_id = user_id
        logger.info("identity_changed", previous_user_id=previous, user_id=user_id)
        if self._audit_logger:
            await self._audit_logger.log_identity_changed(previous, user_id)

        for hook in list(self._hooks):
            try:
                await hook(previous, user_id)
            except Exception as e:
                # One failing hook must not leave later hooks (e.g. the purge) unrun
                logger.error(
                    "identity_hook_failed",
                    hook=getattr(hook, "__qualname__", repr(hook)),
                    error=str(e),
                )
