from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Header, Request

from warden.service.pipeline import AUTHENTICATED, PrincipalContext, RoutePolicy
from warden.service.runtime import get_runtime


def require(policy: RoutePolicy):
    """Build a FastAPI dependency that runs the authorization pipeline for ``policy``.

    Path parameters (and, for resource checks, query parameters) are passed to
    the pipeline so ownership lookups can read the resource id. The resulting
    ``PrincipalContext`` is also stored on ``request.state.principal``.
    """

    async def _authorize(
        request: Request,
        authorization: Optional[str] = Header(None),
    ) -> Optional[PrincipalContext]:
        params: Dict[str, Any] = dict(request.query_params)
        params.update(request.path_params)
        runtime = get_runtime()
        ctx = await runtime.pipeline.authorize(policy, authorization, params)
        request.state.principal = ctx
        return ctx

    _authorize.policy = policy  # type: ignore[attr-defined]
    return _authorize


get_principal = require(AUTHENTICATED)
