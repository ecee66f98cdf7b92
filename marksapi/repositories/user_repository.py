from typing import Optional

from sqlalchemy.orm import Session

from marksapi.models.user import User as UserModel
from marksapi.models.user import UserRole
from marksapi.repositories.base import BaseRepository
from marksapi.schemas.user import User as UserSchema


class UserRepository(BaseRepository[UserModel, UserSchema]):
    """사용자 리포지토리 - 잔액(marks) 은 여기서 변경하지 않음"""

    def __init__(self, db: Session):
        super().__init__(UserModel, UserSchema, db)

    def create_user(
        self,
        world_id_nullifier: str,
        nickname: Optional[str] = None,
        wallet_address: Optional[str] = None,
        role: UserRole = UserRole.USER,
        marks: int = 0,
    ) -> UserSchema:
        """사용자 생성 (초기 잔액은 관리 스크립트/테스트용)"""
        with self._atomic():
            user = UserModel(
                world_id_nullifier=world_id_nullifier,
                nickname=nickname,
                wallet_address=wallet_address,
                role=role.value,
                marks=marks,
            )
            self.db.add(user)
            self.db.flush()
            return self._to_schema(user)
