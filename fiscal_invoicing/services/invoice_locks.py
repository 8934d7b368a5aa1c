"""Per-invoice mutual exclusion for authorization and credit-note issuance."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict
from uuid import UUID


logger = logging.getLogger(__name__)


class InvoiceLockRegistry:
    """
    One asyncio.Lock per invoice id, created on demand and dropped when
    nobody holds or waits for it. Unrelated invoices never contend.

    This covers a single process; across processes the invoice row's
    version column rejects the losing writer.
    """

    def __init__(self):
        self._locks: Dict[UUID, asyncio.Lock] = {}
        self._users: Dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, invoice_id: UUID):
        lock = self._locks.setdefault(invoice_id, asyncio.Lock())
        self._users[invoice_id] = self._users.get(invoice_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[invoice_id] -= 1
            if self._users[invoice_id] == 0:
                del self._users[invoice_id]
                del self._locks[invoice_id]

    def is_locked(self, invoice_id: UUID) -> bool:
        lock = self._locks.get(invoice_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
