"""
Factory for creating chain query adapters.
"""
from typing import Callable, Dict

from app.core.config import Settings
from app.services.ledger import ChainQueryAdapter
from app.services.solana_rpc import SolanaChainAdapter


def _solana(cluster: str) -> Callable[[Settings], ChainQueryAdapter]:
    def build(settings: Settings) -> ChainQueryAdapter:
        return SolanaChainAdapter(
            rpc_url=str(settings.SOLANA_RPC_URL),
            cluster=cluster,
            commitment=settings.SOLANA_COMMITMENT,
            timeout_seconds=settings.LEDGER_TIMEOUT_SECONDS,
            max_retries=settings.LEDGER_MAX_RETRIES,
            backoff_seconds=settings.LEDGER_RETRY_BACKOFF_SECONDS,
        )
    return build


class ChainAdapterFactory:
    """Factory to create chain adapters based on network name."""

    _builders: Dict[str, Callable[[Settings], ChainQueryAdapter]] = {
        "solana": _solana("mainnet-beta"),
        "solana-devnet": _solana("devnet"),
        "solana-testnet": _solana("testnet"),
    }

    @classmethod
    def create(cls, network: str, settings: Settings) -> ChainQueryAdapter:
        """
        Create a chain adapter for the specified network.

        Raises:
            ValueError: If network is not supported
        """
        builder = cls._builders.get(network.lower().strip())
        if builder is None:
            supported = ", ".join(cls._builders.keys())
            raise ValueError(
                f"Unsupported network: {network}. "
                f"Supported networks: {supported}"
            )
        return builder(settings)

    @classmethod
    def get_supported_networks(cls) -> list:
        return list(cls._builders.keys())
