from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from app.config import settings
import httpx

ADMIN_ROLE = "Admin"
INTERNAL_ROLE = "Internal"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


async def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    """Decode the bearer token locally, then let the user-management service confirm it is still valid."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
        if payload.get("sub") is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    async with httpx.AsyncClient(timeout=10) as client:
        try:
            response = await client.get(
                f"{settings.USER_MANAGEMENT_URL}/api/v1/auth/verify",
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise HTTPException(status_code=e.response.status_code, detail="User verification failed")
        except httpx.RequestError:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="User management service unavailable")


def _require_roles(current_user: dict, roles) -> dict:
    if current_user.get("role") not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to perform this action")
    return current_user


async def get_admin_user(current_user: dict = Depends(get_current_user)) -> dict:
    return _require_roles(current_user, (ADMIN_ROLE,))


async def get_admin_or_internal_user(current_user: dict = Depends(get_current_user)) -> dict:
    # Internal services enqueue notifications with a service token
    return _require_roles(current_user, (ADMIN_ROLE, INTERNAL_ROLE))
