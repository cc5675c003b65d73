# tests/test_nonce_registry.py
"""
Unit tests for the nonce replay registry.
"""
import threading

from x402_relay.protocol.nonces import NonceRegistry, get_nonce_registry, reset_nonce_registry


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestNonceRegistry:
    """Test claim/expiry semantics."""

    def test_first_claim_succeeds(self):
        """A fresh nonce can be claimed."""
        registry = NonceRegistry(clock=FakeClock())
        try:
            assert registry.claim("permit2:1") is True
        finally:
            registry.close()

    def test_second_claim_fails(self):
        """Re-claiming within the TTL is rejected."""
        registry = NonceRegistry(clock=FakeClock())
        try:
            registry.claim("permit2:1")
            assert registry.claim("permit2:1") is False
        finally:
            registry.close()

    def test_claim_after_expiry(self):
        """After the TTL the nonce can be claimed again."""
        clock = FakeClock()
        registry = NonceRegistry(ttl_seconds=600, clock=clock)
        try:
            registry.claim("permit2:1")
            clock.now += 601
            assert registry.claim("permit2:1") is True
        finally:
            registry.close()

    def test_sweep_removes_expired(self):
        """sweep() drops expired entries only."""
        clock = FakeClock()
        registry = NonceRegistry(ttl_seconds=10, clock=clock)
        try:
            registry.claim("a")
            clock.now += 5
            registry.claim("b")
            clock.now += 6
            assert registry.sweep() == 1
            assert len(registry) == 1
        finally:
            registry.close()

    def test_sweeper_starts_lazily(self):
        """The background sweeper starts on first claim, not construction."""
        registry = NonceRegistry()
        try:
            assert registry.sweeper_running is False
            registry.claim("x")
            assert registry.sweeper_running is True
        finally:
            registry.close()
        assert registry.sweeper_running is False

    def test_concurrent_claims_single_winner(self):
        """Concurrent claims of one nonce produce exactly one success."""
        registry = NonceRegistry()
        results = []
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            results.append(registry.claim("erc3009:0xabc"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        try:
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()
        finally:
            registry.close()

        assert results.count(True) == 1
        assert results.count(False) == 15


class TestGlobalRegistry:
    """Test process-wide registry accessors."""

    def test_singleton(self):
        """get_nonce_registry returns the same instance until reset."""
        first = get_nonce_registry()
        assert get_nonce_registry() is first
        reset_nonce_registry()
        assert get_nonce_registry() is not first

    def test_reset_forgets_claims(self):
        """A reset registry accepts previously claimed nonces."""
        get_nonce_registry().claim("n")
        reset_nonce_registry()
        assert get_nonce_registry().claim("n") is True
