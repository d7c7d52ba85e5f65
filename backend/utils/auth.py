"""
Authentication utilities
"""
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import hmac
from typing import Optional
import os

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'token-quota-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"
SERVICE_API_KEY = os.environ.get('SERVICE_API_KEY', '')


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify JWT token and return current user"""
    from database import db

    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")

        user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
        if not user:
            raise HTTPException(status_code=401, detail="User not found")

        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_service_caller(x_service_key: Optional[str] = Header(None)):
    """Authenticate internal callers (payment webhook handler, sweep) by shared key"""
    from token_quota.authorization import SERVICE_CALLER

    if not SERVICE_API_KEY:
        raise HTTPException(status_code=503, detail="Service key not configured")
    if not x_service_key or not hmac.compare_digest(x_service_key, SERVICE_API_KEY):
        raise HTTPException(status_code=401, detail="Invalid service key")
    return SERVICE_CALLER
