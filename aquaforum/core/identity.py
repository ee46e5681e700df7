from typing import Optional

from fastapi import Depends, Header, HTTPException, status


class AuthUser:
    def __init__(self, user_id: str, is_admin: bool = False):
        self.user_id = user_id
        self.is_admin = is_admin


# The gateway in front of the API authenticates and forwards these headers
async def optional_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
) -> Optional[AuthUser]:
    if not x_user_id or not x_user_id.strip():
        return None
    return AuthUser(x_user_id.strip(), (x_user_role or "").strip().lower() == "admin")


async def require_user(user: Optional[AuthUser] = Depends(optional_user)) -> AuthUser:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


async def require_admin(user: AuthUser = Depends(require_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return user
