from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from mealplan.core.firebase import verify_id_token

security_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(token: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)]) -> str:
  """Verify the bearer token and return the caller's user id."""
  if token is None or not token.credentials:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing bearer token")

  decoded_claims = await run_in_threadpool(verify_id_token, token.credentials)
  if not decoded_claims:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token", headers={"WWW-Authenticate": "Bearer"})

  user_id = decoded_claims.get("uid")
  if not user_id:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims")

  return str(user_id)
