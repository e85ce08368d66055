"""Identity collaborator contract.

The auth layer owns sessions; the cart only needs "who is signed in now" and
a stream of changes to that answer (None = signed out).
"""
import asyncio
from typing import AsyncIterator, List, Optional, Protocol


class IdentitySource(Protocol):
    def current(self) -> Optional[str]: ...

    def changes(self) -> AsyncIterator[Optional[str]]: ...


class IdentityStream:
    """
    In-process IdentitySource the auth layer pushes sign-in/sign-out events into.

    Each ``changes()`` iterator gets every transition published after it was
    created; repeated values are collapsed.
    """

    def __init__(self, user_id: Optional[str] = None):
        self._current = user_id
        self._queues: List["asyncio.Queue[Optional[str]]"] = []

    def current(self) -> Optional[str]:
        return self._current

    def set_user(self, user_id: Optional[str]) -> None:
        if user_id == self._current:
            return
        self._current = user_id
        for queue in list(self._queues):
            queue.put_nowait(user_id)

    def sign_in(self, user_id: str) -> None:
        self.set_user(user_id)

    def sign_out(self) -> None:
        self.set_user(None)

    def changes(self) -> AsyncIterator[Optional[str]]:
        # Register now, not on first iteration, so nothing published in between is lost
        queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: "asyncio.Queue[Optional[str]]") -> AsyncIterator[Optional[str]]:
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)
