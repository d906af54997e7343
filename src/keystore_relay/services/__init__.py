"""Network-facing services for the keystore relay and wallet client."""

from .confirmation import ConfirmationPoller, ConfirmationStatus
from .rate_limit import MemoryRateLimitStore, RateLimiter, RedisRateLimitStore
from .relayer import RelayerService
from .relayer_client import RelayerClient
from .rpc import SolanaRpcClient
from .wallet import KeystoreWallet

__all__ = [
    "ConfirmationPoller",
    "ConfirmationStatus",
    "KeystoreWallet",
    "MemoryRateLimitStore",
    "RateLimiter",
    "RedisRateLimitStore",
    "RelayerClient",
    "RelayerService",
    "SolanaRpcClient",
]
