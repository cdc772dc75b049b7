"""
app/services/sync_errors.py

Exceptions shared by the sync stages and orchestrator.
"""

from __future__ import annotations


class StageFatalError(RuntimeError):
    """
    Raised when a stage cannot produce a usable result; the run is failed.
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.message = message


class SyncAlreadyRunningError(RuntimeError):
    """
    Raised when another invocation holds the running lock.
    """

    def __init__(self, holder: str | None = None) -> None:
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"A catalog sync is already running{detail}.")
        self.holder = holder


class SyncLockLostError(RuntimeError):
    """
    Raised when the running lock expired and is now absent or held elsewhere.
    Nothing more may be written for the run by the caller.
    """

    def __init__(self, owner: str, holder: str | None = None) -> None:
        super().__init__(f"Sync lock lost by {owner} (now held by {holder or 'nobody'}).")
        self.owner = owner
        self.holder = holder
