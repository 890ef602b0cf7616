from jwt import decode, ExpiredSignatureError, InvalidTokenError
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer

from app.config import settings
from app.core.models import TenantScope

security = HTTPBearer()

async def get_current_user(credentials = Depends(security)) -> dict:
    try:
        payload = decode(
            credentials.credentials,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
        return payload
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_admin_user(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# tenant boundary comes from the org / branch claims the auth service put in the token
async def get_scope(user: dict = Depends(get_current_user)) -> TenantScope:
    return TenantScope(org_id=user.get("org_id"), branch_id=user.get("branch_id"))
