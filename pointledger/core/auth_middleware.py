import hmac
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from pointledger.config import get_settings
from pointledger.core.exceptions import AuthenticationError

# 내부 호출자(스윕 타이머, 복구 작업)용 Bearer 토큰 스킴
security = HTTPBearer(auto_error=False)


def verify_internal_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """내부 엔드포인트 인증 - Authorization: Bearer <AUTH_TOKEN>"""
    expected = get_settings().AUTH_TOKEN
    if not credentials:
        raise AuthenticationError("Authentication required")

    if not expected or not hmac.compare_digest(credentials.credentials, expected):
        raise AuthenticationError("Invalid internal token")
