# /convoflow/dependencies/tenant.py

from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from convoflow.config.settings import settings

# Every flow API call acts for exactly one tenant, named by the tenant_id claim
# of the CRM-issued access token.

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verifies signature and expiry; raises 401 on any JWT error."""
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise _unauthorized(f"Token verification failed: {e}")


def get_tenant_id(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    """
    Tenant of the caller.

    Raises:
        HTTPException 401: no bearer token, or the token is invalid or expired
        HTTPException 403: the token carries no tenant_id claim
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    claim = decode_access_token(credentials.credentials).get("tenant_id")
    tenant_id = claim.strip() if isinstance(claim, str) else claim
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant context missing")
    return str(tenant_id)
