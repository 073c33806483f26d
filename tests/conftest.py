import os

# 모듈 수준 엔진/설정이 import 시점에 만들어지므로 가장 먼저 지정
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTH_TOKEN", "test-internal-token")

from datetime import datetime, timedelta
from typing import List, Optional

import pytest

from pointledger.config import Settings
from pointledger.database.connection import build_engine, build_session_factory
from pointledger.models.base import Base
from pointledger.models.points import PointBlock, RemainingPoint
from pointledger.models.user import User
from pointledger.services.point_service import PointService
from pointledger.utils.timezone_utils import utc_now

INTERNAL_TOKEN = os.environ["AUTH_TOKEN"]


@pytest.fixture
def engine(tmp_path):
    """테스트마다 독립된 파일 기반 SQLite (스레드 간 공유 가능)"""
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(
        LEDGER_MAX_RETRIES=5,
        LEDGER_RETRY_BACKOFF_SECONDS=0.001,
        LEDGER_OPERATION_TIMEOUT_SECONDS=10.0,
        LEDGER_REJECT_PAST_EXPIRY=True,
        SWEEP_BATCH_SIZE=1000,
        AUTH_TOKEN=INTERNAL_TOKEN,
    )


@pytest.fixture
def users(session_factory):
    """사용자 1, 2 생성"""
    session = session_factory()
    session.add_all(
        [
            User(id=1, email="alice@example.com", nickname="alice"),
            User(id=2, email="bob@example.com", nickname="bob"),
        ]
    )
    session.commit()
    session.close()
    return [1, 2]


@pytest.fixture
def point_service(db, test_settings, users):
    return PointService(db, settings=test_settings)


@pytest.fixture
def seed_block(session_factory):
    """서비스를 거치지 않고 블록을 직접 생성 (이미 만료된 블록 등)

    잔액 캐시도 함께 증가시켜 정상 적립과 같은 상태를 만듭니다.
    """

    def _seed(
        user_id: int,
        amount: int,
        expires_at: datetime,
        remaining: Optional[int] = None,
    ) -> int:
        session = session_factory()
        try:
            remaining_amount = amount if remaining is None else remaining
            block = PointBlock(
                user_id=user_id,
                amount=amount,
                remaining_amount=remaining_amount,
                earned_at=expires_at - timedelta(days=30),
                expires_at=expires_at,
            )
            session.add(block)
            balance = session.get(RemainingPoint, user_id)
            if balance is None:
                balance = RemainingPoint(
                    user_id=user_id, total_remaining_points=0, last_updated_at=utc_now()
                )
                session.add(balance)
            balance.total_remaining_points += remaining_amount
            session.commit()
            return block.id
        finally:
            session.close()

    return _seed


@pytest.fixture
def set_cached_balance(session_factory):
    """잔액 캐시를 강제로 변경 (데이터 손상 시나리오)"""

    def _set(user_id: int, value: int) -> None:
        session = session_factory()
        try:
            session.query(RemainingPoint).filter(
                RemainingPoint.user_id == user_id
            ).update({"total_remaining_points": value})
            session.commit()
        finally:
            session.close()

    return _set


@pytest.fixture
def load_blocks(session_factory):
    """새 세션으로 사용자의 모든 블록을 id 순으로 조회"""

    def _load(user_id: int) -> List[PointBlock]:
        session = session_factory()
        try:
            return (
                session.query(PointBlock)
                .filter(PointBlock.user_id == user_id)
                .order_by(PointBlock.id)
                .all()
            )
        finally:
            session.close()

    return _load


@pytest.fixture
def in_days():
    def _in_days(days: float) -> datetime:
        return utc_now() + timedelta(days=days)

    return _in_days
