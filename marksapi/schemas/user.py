from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from marksapi.models.user import UserRole


class User(BaseModel):
    id: int
    world_id_nullifier: str
    nickname: Optional[str] = None
    wallet_address: Optional[str] = None
    marks: int = 0
    role: UserRole = UserRole.USER
    is_active: bool = True
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_admin(self) -> bool:
        return UserRole.is_admin(self.role)
