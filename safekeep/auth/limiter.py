"""Shared rate limiter for SafeKeep key-management and recovery endpoints.

Uses slowapi (Starlette-compatible rate limiting). The Limiter instance is
created here and shared between:
  - safekeep/auth/router.py   (key management decorators)
  - safekeep/guard/router.py  (recovery vote decorator)
  - safekeep/main.py          (app.state.limiter + SlowAPIMiddleware registration)
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

KEY_MANAGEMENT_RATE_LIMIT = "20/minute"

# Recovery votes are rare, human-driven actions
RECOVERY_VOTE_RATE_LIMIT = "30/minute"
