from pydantic import BaseModel
from typing import Optional


class User(BaseModel):
    id: int
    email: Optional[str] = None
    nickname: str = ""
    is_active: bool = True

    class Config:
        from_attributes = True
