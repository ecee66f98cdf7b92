"""
인증/인가 의존성

- 사용자: Bearer JWT (python-jose, payload 에 user_id)
- 관리자: 사용자 인증 + role=admin
- 내부 호출(설문 서비스): X-Internal-Token 헤더
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from marksapi.config import settings
from marksapi.core.exceptions import AuthenticationError, AuthorizationError
from marksapi.database.session import get_db
from marksapi.repositories.user_repository import UserRepository
from marksapi.schemas.user import User as UserSchema

# JWT Bearer 토큰 스킴
security = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    user_id: int


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> int:
    """JWT 토큰을 검증하고 user_id를 반환합니다."""
    if credentials is None:
        raise AuthenticationError("Authentication required")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload.model_validate(payload).user_id
    except (JWTError, PydanticValidationError):
        raise AuthenticationError("Invalid or expired token")


def get_current_user(
    user_id: int = Depends(verify_bearer_token), db: Session = Depends(get_db)
) -> UserSchema:
    """현재 인증된 사용자 정보 조회"""
    user = UserRepository(db).get_by_id(user_id)
    if user is None:
        raise AuthenticationError("User not found")
    return user


def get_current_active_user(
    current_user: UserSchema = Depends(get_current_user),
) -> UserSchema:
    """활성 사용자만 허용"""
    if not current_user.is_active:
        raise AuthorizationError("Inactive user account")
    return current_user


def require_admin(
    current_user: UserSchema = Depends(get_current_active_user),
) -> UserSchema:
    """관리자 권한이 필요한 엔드포인트용 의존성"""
    if not current_user.is_admin:
        raise AuthorizationError("Admin privileges required")
    return current_user


def verify_internal_token(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token"),
) -> None:
    """설문 서비스 등 내부 호출자 인증"""
    expected = settings.INTERNAL_AUTH_TOKEN
    if not expected or not x_internal_token:
        raise AuthenticationError("Internal token required")
    if not hmac.compare_digest(x_internal_token, expected):
        raise AuthenticationError("Invalid internal token")
