from typing import Optional
from sqlalchemy.orm import Session

from pointledger.models.user import User as UserModel
from pointledger.schemas.user import User as UserSchema
from pointledger.repositories.base import BaseRepository


class UserRepository(BaseRepository[UserModel, UserSchema]):
    """사용자 리포지토리 - 원장에서는 사용자 확인(ResolveUser)에만 사용"""

    def __init__(self, db: Session):
        super().__init__(UserModel, UserSchema, db)

    def resolve(self, user_id: int) -> Optional[UserSchema]:
        """사용자 조회 (없으면 None)"""
        return self.get_by_id(user_id)
