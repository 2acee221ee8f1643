"""
Finalizer Manager - Cleanup obligations on resource records.

A finalizer token on a record means its owner still has to clean up the
target environment before storage may purge the record. Tokens are
registered before anything is created and discharged only after cleanup
has been confirmed.
"""

import logging
from typing import Any, Iterable, Optional

from models import ResourceRecord

logger = logging.getLogger(__name__)


class FinalizerManager:
    """Registers and discharges one controller's finalizer token."""

    def __init__(self, db: Any, token: str):
        self._db = db
        self.token = token

    def is_registered(
        self, record: ResourceRecord, token: Optional[str] = None
    ) -> bool:
        return (token or self.token) in record.finalizers

    @staticmethod
    def has_pending(record: ResourceRecord, owned_tokens: Iterable[str]) -> bool:
        """True if any of the given tokens is still on the record."""
        return any(token in record.finalizers for token in owned_tokens)

    async def register(
        self, record: ResourceRecord, token: Optional[str] = None
    ) -> bool:
        """
        Add a token to the record and persist it.

        Returns:
            True if a write was issued, False if the token was already there.

        Raises:
            ConflictError: If the record changed since it was read.
        """
        token = token or self.token
        if token in record.finalizers:
            return False

        record.resource_version = await self._db.add_finalizer(
            record.id, token, expected_version=record.resource_version
        )
        record.finalizers.append(token)
        logger.info(f"Registered finalizer {token} on {record.key}")
        return True

    async def discharge(
        self, record: ResourceRecord, token: Optional[str] = None
    ) -> bool:
        """
        Remove a token from the record and persist it.

        Returns:
            True if a write was issued, False if the token was absent.

        Raises:
            ConflictError: If the record changed since it was read.
        """
        token = token or self.token
        if token not in record.finalizers:
            return False

        record.resource_version = await self._db.remove_finalizer(
            record.id, token, expected_version=record.resource_version
        )
        record.finalizers = [f for f in record.finalizers if f != token]
        logger.info(f"Discharged finalizer {token} on {record.key}")
        return True
