# x402_relay/protocol/nonces.py
"""
Replay protection for x402 payment nonces.

The registry remembers every claimed nonce for a time-to-live window
(default 10 minutes). A daemon thread sweeps expired entries every 60 seconds;
it starts on the first claim, not at construction, and never keeps the process
alive on shutdown.

This is an at-most-once guarantee per process. Several replicas behind a load
balancer each keep their own registry, so a shared store with TTL support is
needed for cross-instance replay protection. Anything implementing
``NonceStore`` can be dropped in.

Configuration:
- X402_NONCE_TTL_SECONDS: How long a claimed nonce is remembered (default: 600)
- X402_NONCE_SWEEP_INTERVAL_SECONDS: Sweep period (default: 60)
"""
import logging
import threading
import time
from typing import Callable, Dict, Optional

from typing_extensions import Protocol

from x402_relay.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


class NonceStore(Protocol):
    def claim(self, nonce: str) -> bool:
        ...


class NonceRegistry:
    """
    In-memory nonce cache with TTL expiry.

    Thread-safe: concurrent claims of the same nonce yield exactly one True.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the registry.

        Args:
            ttl_seconds: How long a claimed nonce blocks re-use
            sweep_interval_seconds: Period of the background sweep
            clock: Time source returning Unix seconds (injectable for tests)
        """
        self._ttl_seconds = ttl_seconds
        self._sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def claim(self, nonce: str) -> bool:
        """
        Claim a nonce for single use.

        Args:
            nonce: The scheme-specific nonce to claim

        Returns:
            True if the nonce was free (and is now recorded),
            False if it is already claimed and not yet expired
        """
        self._ensure_sweeper()
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(nonce)
            if expires_at is not None and expires_at > now:
                return False
            self._entries[nonce] = now + self._ttl_seconds
            return True

    def sweep(self) -> int:
        """
        Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [nonce for nonce, expires_at in self._entries.items() if expires_at <= now]
            for nonce in expired:
                del self._entries[nonce]
        if expired:
            logger.debug(f"Nonce registry swept {len(expired)} expired entries")
        return len(expired)

    def close(self) -> None:
        """Stop the background sweeper (if running)."""
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=1)
        self._sweeper = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _ensure_sweeper(self) -> None:
        if self._sweeper is not None:
            return
        with self._lock:
            if self._sweeper is not None:
                return
            self._stop.clear()
            self._sweeper = threading.Thread(
                target=self._run_sweeper,
                name="x402-nonce-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self._sweep_interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Nonce registry sweep failed: {e}", exc_info=True)


# Global registry instance
_nonce_registry: Optional[NonceRegistry] = None
_registry_lock = threading.Lock()


def get_nonce_registry() -> NonceRegistry:
    """Get the process-wide nonce registry, creating it from settings if needed."""
    global _nonce_registry
    if _nonce_registry is None:
        with _registry_lock:
            if _nonce_registry is None:
                _nonce_registry = NonceRegistry(
                    ttl_seconds=settings.X402_NONCE_TTL_SECONDS,
                    sweep_interval_seconds=settings.X402_NONCE_SWEEP_INTERVAL_SECONDS,
                )
    return _nonce_registry


def reset_nonce_registry() -> None:
    """Drop the process-wide registry (useful for testing)."""
    global _nonce_registry
    with _registry_lock:
        if _nonce_registry is not None:
            _nonce_registry.close()
        _nonce_registry = None
