"""
Cooperative cancellation for a single agent turn.

A fresh token is created for every turn and handed down to each call that
may want to stop early. Nothing is interrupted forcibly: callers check the
token at their own suspension points.
"""

class CancellationToken:
    """One-shot cancellation flag."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self._cancelled:
            self.reason = reason
            self._cancelled = True

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<CancellationToken {state}>"
