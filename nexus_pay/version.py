"""
Ledger version state cell.

The only mutable per-client state besides the token-account cache. The
single permitted transition is legacy (2 or 3) → token (4). Concurrent
callers that both observe the migration signal may both call
``upgrade()``; the second call is a no-op.
"""

from __future__ import annotations

import threading

from nexus_pay.logging_setup import get_logger
from nexus_pay.models import LedgerVersion

_logger = get_logger("version")


class LedgerVersionCell:
    """Lock-guarded, upgrade-only holder of the active ledger version."""

    def __init__(self, initial: LedgerVersion) -> None:
        self._version = LedgerVersion(initial)
        self._lock = threading.Lock()

    def get(self) -> LedgerVersion:
        with self._lock:
            return self._version

    def upgrade(self) -> bool:
        """Move to the token ledger.

        Returns:
            True if this call performed the transition, False if the cell
            was already on the token ledger.
        """
        with self._lock:
            if self._version == LedgerVersion.TOKEN_V4:
                return False
            previous = self._version
            self._version = LedgerVersion.TOKEN_V4

        _logger.info("version:upgraded from=%d to=%d", previous, LedgerVersion.TOKEN_V4)
        return True
