from .user import User
from .points import PointBlockSchema, PointUsageSchema, SweepReport
