"""HTTP response builder for rejected guard operations.

Every GuardError reaching the HTTP layer is rendered by build_denial_response():

    {
      "error": {
        "kind": "NotOwner",
        "code": "not_owner",
        "message": "Not owner"
      },
      "event_id": "<ulid or null>"
    }

Headers set:
  - ``X-SafeKeep-Denied: true`` — on ALL policy denials. A 502 for a failed
    ledger send carries it too: the operation was refused as a whole.
  - ``X-SafeKeep-Event-ID: <ulid>`` — correlates with the audit trail, when
    an audit record was scheduled.

Nothing about guard internals beyond the taxonomy is exposed in the body.
"""

from __future__ import annotations

from typing import Optional

from fastapi.responses import JSONResponse

from safekeep.guard.errors import GuardError


def build_denial_response(exc: GuardError, event_id: Optional[str] = None) -> JSONResponse:
    """Render a GuardError with its mapped status code."""
    response = JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.to_dict(), "event_id": event_id},
    )
    response.headers["X-SafeKeep-Denied"] = "true"
    if event_id:
        response.headers["X-SafeKeep-Event-ID"] = event_id
    return response
