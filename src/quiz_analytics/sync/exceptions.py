"""Exceptions raised by the attribution sync pipeline."""
from datetime import datetime
from typing import Optional


class QuizSyncError(Exception):
    """Base exception for all attribution sync errors."""


class InvalidWindow(QuizSyncError):
    """Raised for an empty, inverted or oversized attribution window.

    Caller or configuration error; never retried automatically.
    """

    def __init__(
        self,
        message: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ):
        self.window_start = window_start
        self.window_end = window_end
        super().__init__(message)


class UpstreamUnavailable(QuizSyncError):
    """Raised when the session store or the order feed cannot be read."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"{source} unavailable: {detail}")


class InconsistentAttribution(QuizSyncError):
    """Raised when an attribution names a session missing from the snapshot."""

    def __init__(self, order_id: str, session_id: str):
        self.order_id = order_id
        self.session_id = session_id
        super().__init__(
            f"Attribution for order={order_id} references session={session_id} "
            "which is not in the supplied session snapshot"
        )


class SyncInProgressError(QuizSyncError):
    """Raised when another sync pass already holds the shop's lock."""

    def __init__(self, shop: str, lock_key: str):
        self.shop = shop
        self.lock_key = lock_key
        super().__init__(f"Sync lock already held for shop={shop}, key={lock_key}")
