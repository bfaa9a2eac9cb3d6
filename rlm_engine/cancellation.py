"""
Cancellation support for outbound model calls.

A token is handed to a call; cancelling it aborts that call only. Sibling
calls already in flight are left alone.
"""

from __future__ import annotations

import asyncio

from .types import CallCancelledError


class CancellationToken:
    """
    Token for checking and requesting cancellation.

    Async-safe; the underlying event is created lazily so a token can be
    constructed outside a running loop.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def cancel(self) -> None:
        """Request cancellation."""
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def check(self) -> None:
        """
        Raise if cancelled.

        Raises:
            CallCancelledError: If cancellation was requested
        """
        if self._cancelled:
            raise CallCancelledError()

    async def wait(self) -> None:
        """Block until cancelled."""
        await self._get_event().wait()


__all__ = ["CancellationToken"]
