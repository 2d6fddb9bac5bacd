"""Root test configuration for SafeKeep.

Sets SAFEKEEP_AUTH_REQUIRED=false for the entire test suite so that guard
and integration tests can name their caller with the X-SafeKeep-Caller
header instead of provisioning API keys.

Tests that explicitly verify key enforcement (test_auth_middleware.py)
override this with their own monkeypatch fixture that sets
SAFEKEEP_AUTH_REQUIRED=true.

Production default is SAFEKEEP_AUTH_REQUIRED=true — see safekeep/auth/middleware.py.
"""

import pytest


@pytest.fixture(autouse=True)
def disable_auth_for_tests(monkeypatch: pytest.MonkeyPatch) -> None:
    """Disable key enforcement for all tests by default."""
    monkeypatch.setenv("SAFEKEEP_AUTH_REQUIRED", "false")


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test rate limit bleed on the recovery and key endpoints.
    """
    from safekeep.auth.limiter import limiter
    try:
        limiter._storage.reset()
    except Exception:
        pass  # Storage may not support reset in all backends
