from datetime import datetime
from enum import Enum
from typing import Optional, Union

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from marksapi.models.base import BaseModel, BigIntegerPK


class UserRole(str, Enum):
    """사용자 역할 정의"""

    USER = "user"  # 일반 사용자
    ADMIN = "admin"  # 관리자 (출금 수동 승인/거절)

    @classmethod
    def is_admin(cls, role: Union[str, "UserRole"]) -> bool:
        if isinstance(role, cls):
            role = role.value
        return role == cls.ADMIN.value


class User(BaseModel):
    """
    사용자 테이블 - marks 컬럼이 출금 가능한 잔액의 원본

    marks 는 마크 원장 리포지토리만 변경합니다 (행 잠금 후 갱신).
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("marks >= 0", name="marks_non_negative"),
        Index("idx_users_nullifier", "world_id_nullifier"),
    )

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    # World ID nullifier - 사람 한 명당 하나
    world_id_nullifier: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False
    )
    nickname: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    marks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    role: Mapped[str] = mapped_column(
        String(20), default=UserRole.USER.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_purchase_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self):
        return f"<User(id={self.id}, marks={self.marks}, role={self.role})>"

    @property
    def is_admin(self) -> bool:
        return UserRole.is_admin(str(self.role))
