"""
CONTRACT NUMBERING

Human-readable contract numbers:

    CON-YYMM-NNNNNN

YY/MM are the generation year and month, NNNNNN a zero-padded random
6-digit suffix. Random suffixes are not globally unique, so:
1. the contracts collection carries a unique index on contractNumber
2. generation checks the candidate against the store before use
3. inserts that still collide are retried with a fresh number
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional
import asyncio
import logging
import re
import secrets

from title_registry.errors import DuplicateKeyError, StoreUnavailableError
from title_registry.store import CONTRACTS, DocumentStore

logger = logging.getLogger(__name__)

CONTRACT_NUMBER_PATTERN = re.compile(r"^CON-\d{4}-\d{6}$")


class ContractNumberCollisionError(StoreUnavailableError):
    """Raised when no unique number was found within the retry budget."""
    pass


def format_contract_number(prefix: str, when: datetime, suffix: int) -> str:
    return f"{prefix}-{when:%y%m}-{suffix:06d}"


class ContractNumbering:
    """
    Contract number generator with collision retry.
    """

    RETRY_DELAY_MS = 10  # Base delay in milliseconds

    def __init__(
        self,
        store: DocumentStore,
        prefix: str = "CON",
        max_retries: int = 5,
        clock: Callable[[], datetime] = datetime.utcnow,
        random_suffix: Optional[Callable[[], int]] = None
    ):
        self.store = store
        self.prefix = prefix
        self.max_retries = max_retries
        self.clock = clock
        self.random_suffix = random_suffix or (lambda: secrets.randbelow(1_000_000))

    def candidate(self) -> str:
        return format_contract_number(self.prefix, self.clock(), self.random_suffix())

    async def generate(self, session: Any = None) -> str:
        """
        Return a contract number not yet present in the store.

        Raises:
            ContractNumberCollisionError: if max retries exceeded
        """
        for attempt in range(self.max_retries):
            number = self.candidate()
            existing = await self.store.find_one(
                CONTRACTS,
                {"contractNumber": number},
                session=session
            )
            if not existing:
                logger.debug(f"[NUMBERING] Generated contract number: {number}")
                return number

            logger.warning(f"[NUMBERING] Contract number collision: {number}, retry {attempt + 1}")
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise ContractNumberCollisionError(
            f"Failed to generate unique contract number after {self.max_retries} attempts"
        )

    async def insert_with_number(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new contract outside a transaction, assigning a unique number.

        The unique index is the final arbiter: a concurrent insert that took the
        same number makes this insert fail with DuplicateKeyError, and a new
        number is drawn.
        """
        for attempt in range(self.max_retries):
            doc = dict(document)
            doc["contractNumber"] = await self.generate()
            try:
                doc["_id"] = await self.store.insert_one(CONTRACTS, doc)
                logger.info(f"[NUMBERING] Assigned {doc['contractNumber']} to contract {doc['_id']}")
                return doc
            except DuplicateKeyError as e:
                if "contractNumber" not in e.key:
                    raise
                logger.warning(
                    f"[NUMBERING] Insert collided on {doc['contractNumber']}, retry {attempt + 1}"
                )

        raise ContractNumberCollisionError(
            f"Failed to insert contract with unique number after {self.max_retries} attempts"
        )
