"""Payment network clients."""
from .solana import NETWORK_ALIASES, SolanaClient, SolanaConfig, normalize_network

__all__ = ["NETWORK_ALIASES", "SolanaClient", "SolanaConfig", "normalize_network"]
