from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from app.config import Settings, get_settings

# Set by the authenticating gateway in front of this service.
IDENTITY_HEADER = "X-User-Id"


async def get_owner_id(x_user_id: Annotated[str | None, Header(alias=IDENTITY_HEADER)] = None, settings: Settings = Depends(get_settings)) -> str:  # noqa: B008
  """Resolve the caller's user id from the gateway header or the configured development identity."""
  if x_user_id and x_user_id.strip():
    return x_user_id.strip()

  # The development identity is explicit configuration and is rejected in production by get_settings().
  if settings.dev_user_id:
    return settings.dev_user_id

  raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
