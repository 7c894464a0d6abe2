# =============================================================================
# API Dependencies — Caller Identity
# =============================================================================
#
# Authentication is handled upstream (gateway / session layer). This service
# trusts the `X-User-Id` header it forwards and uses it to scope every job
# operation: supersede, polling, listing.
#
# DESIGN DECISION: FastAPI dependency (not middleware). Each endpoint opts in
# via Depends(get_current_user_id) and tests swap it through
# dependency_overrides.
# =============================================================================

from fastapi import Header, HTTPException


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, description="Owning user id"),
) -> str:
    """
    Resolve the calling user from the X-User-Id header.

    Raises:
        HTTPException 401: header missing or blank.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header.")
    if len(user_id) > 64:
        raise HTTPException(status_code=400, detail="X-User-Id is too long.")
    return user_id
