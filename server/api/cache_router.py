import hmac
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from server.services.cache_service import cache

router = APIRouter(prefix="/api/cache")


def require_admin_token(x_admin_token: Optional[str] = Header(default=None)):
    expected = os.getenv("ADMIN_API_TOKEN")
    if not expected:
        raise HTTPException(status_code=503, detail="ADMIN_API_TOKEN is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.get("/stats", dependencies=[Depends(require_admin_token)])
async def cache_stats():
    return cache.stats()


@router.post("/cleanup", dependencies=[Depends(require_admin_token)])
async def cache_cleanup():
    removed = await cache.purge_expired()
    return {"success": True, "removed": removed}


@router.delete("/{key:path}", dependencies=[Depends(require_admin_token)])
async def cache_delete(key: str):
    await cache.delete(key)
    return {"success": True, "key": key}


@router.delete("", dependencies=[Depends(require_admin_token)])
async def cache_clear():
    await cache.clear()
    return {"success": True}
