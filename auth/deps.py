# auth/deps.py
"""
身分由外部登入服務簽發的 HS256 JWT 提供，這裡只取出
  sub  -> 使用者 id
  role -> 'admin' 代表管理員
"""
import hmac
import time
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from util.config import ADMIN_TOKEN, SECRET_KEY

def make_token(user_id: str, role: str = "user", expires_sec: int = 86400) -> str:
    now = int(time.time())
    payload = {"sub": str(user_id), "role": role, "iat": now, "exp": now + expires_sec}
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")

def decode_bearer(authorization: Optional[str]) -> dict:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    return payload

def current_user_id(authorization: Optional[str] = Header(None)) -> str:
    return str(decode_bearer(authorization)["sub"])

def require_admin(
    x_admin_token: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> None:
    # 靜態 X-Admin-Token 或 role=admin 的 JWT 皆可
    if ADMIN_TOKEN and x_admin_token and hmac.compare_digest(x_admin_token, ADMIN_TOKEN):
        return
    if authorization:
        if decode_bearer(authorization).get("role") == "admin":
            return
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin only")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin token invalid")
