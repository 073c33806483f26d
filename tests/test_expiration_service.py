from unittest.mock import patch

import pytest

from pointledger.models.points import PointForfeiture
from pointledger.services.expiration_service import ExpirationService


@pytest.fixture
def expiration_service(db, test_settings, point_service):
    return ExpirationService(db, settings=test_settings, point_service=point_service)


class TestSweepExpired:
    """만료 스윕 테스트"""

    def test_forfeits_expired_remainders(
        self, expiration_service, point_service, seed_block, in_days, load_blocks
    ):
        # Arrange
        expired_id = seed_block(1, 100, in_days(-1), remaining=60)
        live = point_service.credit(1, 50, in_days(1))

        # Act
        report = expiration_service.sweep_expired()

        # Assert
        assert report.processed == 1
        assert report.failed == 0
        assert report.forfeited_points == 60
        assert report.finished_at is not None
        remaining = {b.id: b.remaining_amount for b in load_blocks(1)}
        assert remaining == {expired_id: 0, live.id: 50}
        assert point_service.get_balance(1) == 50
        assert point_service.verify_user_integrity(1).status == "OK"

    def test_writes_forfeiture_audit(self, expiration_service, seed_block, in_days, session_factory):
        block_id = seed_block(2, 30, in_days(-2))

        expiration_service.sweep_expired()

        session = session_factory()
        try:
            rows = session.query(PointForfeiture).all()
        finally:
            session.close()
        assert [(r.user_id, r.block_id, r.amount) for r in rows] == [(2, block_id, 30)]

    def test_idempotent(self, expiration_service, point_service, seed_block, in_days):
        """두 번째 스윕은 처리할 블록이 없음"""
        seed_block(1, 100, in_days(-1))

        first = expiration_service.sweep_expired()
        second = expiration_service.sweep_expired()

        assert first.processed == 1
        assert second.processed == 0
        assert second.forfeited_points == 0
        assert point_service.get_balance(1) == 0

    def test_expiry_boundary_is_inclusive(self, expiration_service, point_service, in_days):
        """expires_at == now 인 블록은 만료 대상"""
        expires_at = in_days(1)
        point_service.credit(1, 10, expires_at)

        report = expiration_service.sweep_expired(now=expires_at)

        assert report.processed == 1
        assert point_service.get_balance(1) == 0

    def test_live_blocks_untouched(self, expiration_service, point_service, in_days):
        point_service.credit(1, 10, in_days(1))

        report = expiration_service.sweep_expired()

        assert report.processed == 0
        assert point_service.get_balance(1) == 10

    def test_limit(self, expiration_service, seed_block, in_days):
        for days in (-3, -2, -1):
            seed_block(1, 10, in_days(days))

        report = expiration_service.sweep_expired(limit=2)

        assert report.processed == 2
        assert report.forfeited_points == 20

    def test_failure_is_isolated(
        self, expiration_service, point_service, seed_block, in_days, set_cached_balance
    ):
        """한 블록 실패가 다른 사용자 블록 처리를 막지 않음"""
        # Arrange: 사용자 1의 캐시가 손상되어 소멸 시 음수가 됨
        broken_id = seed_block(1, 100, in_days(-2))
        seed_block(2, 40, in_days(-1))
        set_cached_balance(1, 10)

        # Act
        report = expiration_service.sweep_expired()

        # Assert
        assert report.processed == 1
        assert report.failed == 1
        assert report.forfeited_points == 40
        assert report.failures[0].block_id == broken_id
        assert report.failures[0].user_id == 1
        assert report.failures[0].error_code == "INVARIANT_001"
        assert point_service.get_balance(1) == 10
        assert point_service.get_balance(2) == 0

    def test_failed_block_retried_next_pass(
        self, expiration_service, point_service, seed_block, in_days, set_cached_balance
    ):
        seed_block(1, 100, in_days(-1))
        set_cached_balance(1, 10)
        assert expiration_service.sweep_expired().failed == 1

        point_service.repair_balance(1)
        report = expiration_service.sweep_expired()

        assert report.processed == 1
        assert point_service.get_balance(1) == 0

    def test_default_service_construction(self, db, test_settings, users, seed_block, in_days):
        seed_block(1, 5, in_days(-1))

        report = ExpirationService(db, settings=test_settings).sweep_expired()

        assert report.forfeited_points == 5

    def test_drains_backlog_larger_than_batch(
        self, expiration_service, point_service, seed_block, in_days, test_settings
    ):
        """limit 이 없으면 배치 크기를 넘는 대상도 한 번의 패스에서 모두 처리"""
        # Arrange
        test_settings.SWEEP_BATCH_SIZE = 2
        for days in (-3, -2, -1):
            seed_block(1, 10, in_days(days))

        # Act
        report = expiration_service.sweep_expired()

        # Assert
        assert report.processed == 3
        assert report.forfeited_points == 30
        assert point_service.get_balance(1) == 0
        assert point_service.verify_user_integrity(1).status == "OK"

    def test_explicit_limit_spans_batches(
        self, expiration_service, seed_block, in_days, test_settings
    ):
        test_settings.SWEEP_BATCH_SIZE = 2
        for days in (-4, -3, -2, -1):
            seed_block(1, 10, in_days(days))

        report = expiration_service.sweep_expired(limit=3)

        assert report.processed == 3

    def test_failed_blocks_do_not_stall_batches(
        self, expiration_service, point_service, seed_block, in_days, test_settings, set_cached_balance
    ):
        """실패 블록이 배치 앞자리를 차지해도 뒤의 블록까지 진행"""
        test_settings.SWEEP_BATCH_SIZE = 1
        broken_id = seed_block(1, 100, in_days(-3))
        seed_block(2, 10, in_days(-2))
        seed_block(2, 20, in_days(-1))
        set_cached_balance(1, 10)

        report = expiration_service.sweep_expired()

        assert report.failed == 1
        assert [f.block_id for f in report.failures] == [broken_id]
        assert report.processed == 2
        assert point_service.get_balance(2) == 0

    def test_unexpected_error_is_isolated(
        self, expiration_service, point_service, seed_block, in_days
    ):
        """도메인 오류가 아닌 예외도 블록 단위로 기록하고 계속 진행"""
        # Arrange
        first_id = seed_block(1, 100, in_days(-2))
        seed_block(2, 40, in_days(-1))
        real_forfeit = point_service.forfeit_block

        def failing_first(block_id, user_id, now=None, timeout=None):
            if block_id == first_id:
                raise RuntimeError("unexpected")
            return real_forfeit(block_id, user_id, now=now, timeout=timeout)

        # Act
        with patch.object(point_service, "forfeit_block", side_effect=failing_first):
            report = expiration_service.sweep_expired()

        # Assert
        assert report.failed == 1
        assert report.failures[0].block_id == first_id
        assert report.failures[0].error_code == "INTERNAL_001"
        assert report.failures[0].message == "unexpected"
        assert report.processed == 1
        assert point_service.get_balance(1) == 100
        assert point_service.get_balance(2) == 0
