# coding: utf-8
"""
Admin token authentication for operational endpoints

Usage:
    @router.post("/admin/payments/monitoring/stop")
    async def stop(admin: str = Depends(verify_admin_token)):
        ...
"""
from typing import Optional

from fastapi import Header, HTTPException
from loguru import logger

from config import config


async def verify_admin_token(
    x_admin_token: Optional[str] = Header(None, description="Operations API token"),
    x_admin_user: Optional[str] = Header(None, description="Operator name for audit fields"),
) -> str:
    """
    Verify the X-Admin-Token header

    Raises:
        HTTPException 401: token missing or invalid
        HTTPException 500: ADMIN_API_TOKEN not configured

    Returns:
        Operator name (X-Admin-User, default "admin")
    """
    if not x_admin_token:
        logger.warning("Admin token missing in request")
        raise HTTPException(status_code=401, detail="Missing admin token. Provide X-Admin-Token header.")

    if not config.ADMIN_API_TOKEN:
        logger.error("ADMIN_API_TOKEN not configured in .env")
        raise HTTPException(status_code=500, detail="Admin authentication not configured")

    if x_admin_token != config.ADMIN_API_TOKEN:
        logger.warning(f"Invalid admin token attempt: {x_admin_token[:4]}...")
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return x_admin_user or "admin"
