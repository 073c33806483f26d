import pytest

from pointledger.models.points import PointBlock
from pointledger.services.allocator import allocate


def make_blocks(*remaining_amounts):
    return [
        PointBlock(id=i + 1, user_id=1, amount=r or 1, remaining_amount=r)
        for i, r in enumerate(remaining_amounts)
    ]


class TestAllocate:
    """만료 임박 순 배분 테스트"""

    def test_single_block_partial(self):
        """한 블록에서 일부만 차감"""
        # Arrange
        blocks = make_blocks(100)

        # Act
        result = allocate(30, blocks)

        # Assert
        assert result.is_satisfied
        assert [(d.block.id, d.amount) for d in result.draws] == [(1, 30)]
        assert blocks[0].remaining_amount == 70

    def test_spans_blocks_in_given_order(self):
        """앞 블록을 모두 소진한 뒤 다음 블록에서 차감"""
        blocks = make_blocks(50, 30, 100)

        result = allocate(60, blocks)

        assert [(d.block.id, d.amount) for d in result.draws] == [(1, 50), (2, 10)]
        assert [b.remaining_amount for b in blocks] == [0, 20, 100]
        assert result.allocated == 60
        assert result.shortfall == 0

    def test_exact_total_consumes_everything(self):
        blocks = make_blocks(10, 20)

        result = allocate(30, blocks)

        assert result.is_satisfied
        assert [b.remaining_amount for b in blocks] == [0, 0]

    def test_shortfall_when_blocks_exhausted(self):
        """블록 합계가 부족하면 가능한 만큼만 배분하고 부족분을 보고"""
        blocks = make_blocks(10, 5)

        result = allocate(20, blocks)

        assert not result.is_satisfied
        assert result.allocated == 15
        assert result.shortfall == 5

    def test_skips_empty_blocks(self):
        """잔량 0 블록은 차감 내역에 포함되지 않음"""
        blocks = make_blocks(0, 40)

        result = allocate(25, blocks)

        assert [(d.block.id, d.amount) for d in result.draws] == [(2, 25)]

    def test_stops_when_satisfied(self):
        """요청을 채우면 뒤 블록은 건드리지 않음"""
        blocks = make_blocks(100, 100)

        result = allocate(100, blocks)

        assert len(result.draws) == 1
        assert blocks[1].remaining_amount == 100

    def test_does_not_reorder(self):
        """전달된 순서를 그대로 따름 (정렬은 호출자 책임)"""
        blocks = make_blocks(5, 50)
        blocks.reverse()

        result = allocate(10, blocks)

        assert [(d.block.id, d.amount) for d in result.draws] == [(2, 10)]

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_rejected(self, amount):
        with pytest.raises(ValueError, match="Amount must be positive"):
            allocate(amount, make_blocks(10))
