"""
Chain query adapter interface.

An adapter answers one question for the verification engine: what does the
ledger say about this settlement reference? Each supported ledger has one
implementation, selected by configuration through ``ChainAdapterFactory``.

Network I/O happens only here. Implementations raise
``TransientLedgerError`` for faults worth retrying (timeouts, connection
failures, rate limiting); ``resolve_settlement`` retries those with
exponential backoff and surfaces exhaustion as ``ChainQueryError``.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from app.facilitator.errors import ChainQueryError
from app.facilitator.models import SettlementDetails

logger = logging.getLogger(__name__)


class TransientLedgerError(Exception):
    """A ledger fault that may succeed on retry."""


class ChainQueryAdapter(ABC):
    """
    Capability interface over a single ledger.

    Subclasses provide the chain name, the native asset symbol and the
    default mints for well-known tokens, and implement ``_query_settlement``.
    """

    native_token: str = ""
    native_decimals: int = 0

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    @abstractmethod
    def chain_name(self) -> str:
        """Return the chain name (e.g., 'solana-devnet')."""
        pass

    @property
    def default_mints(self) -> Dict[str, str]:
        """Token symbol -> mint for tokens the adapter knows on its network."""
        return {}

    @abstractmethod
    def _query_settlement(self, reference: str) -> SettlementDetails:
        """Perform a single ledger lookup for ``reference``."""
        pass

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        pass

    @abstractmethod
    def validate_reference(self, reference: str) -> bool:
        pass

    def is_native(self, token: str) -> bool:
        return token.upper() == self.native_token.upper()

    def default_mint(self, token: str) -> Optional[str]:
        return self.default_mints.get(token.upper())

    def resolve_settlement(self, reference: str) -> SettlementDetails:
        """
        Look up a settlement reference, retrying transient faults.

        Raises:
            ChainQueryError: if every attempt failed transiently
        """
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return self._query_settlement(reference)
            except TransientLedgerError as e:
                if attempt + 1 >= attempts:
                    logger.error(
                        f"Ledger query for {reference} failed after {attempts} attempts: {e}"
                    )
                    break
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"Ledger query for {reference} failed (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                self._sleep(delay)

        raise ChainQueryError()

    def close(self) -> None:
        """Release network resources at shutdown."""
