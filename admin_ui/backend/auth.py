import hmac
from typing import Optional

from fastapi import Header, HTTPException

import settings


def require_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """X-Admin-Token must match ADMIN_API_TOKEN; the API is closed while the token is unset."""
    expected = settings.admin_token()
    if not expected:
        raise HTTPException(status_code=503, detail="ADMIN_API_TOKEN is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid or missing X-Admin-Token")
