# Repository layer - Data access with Pydantic responses

from .base import BaseRepository
from .user_repository import UserRepository
from .points_repository import PointsRepository

__all__ = [
    "BaseRepository",
    "UserRepository",
    "PointsRepository",
]
