from fastapi import Header, HTTPException, status

from loyalty_ledger.core.settings import get_settings


async def require_admin_api_key(x_api_key: str = Header("", alias="X-API-Key")) -> None:
    expected = get_settings().admin_api_key
    if not expected:
        return

    if x_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
