"""
포인트 차감 배분기

만료 임박 순으로 정렬된 블록 목록에서 요청 금액을 어떻게 나누어 차감할지 결정합니다.
정렬은 호출자(리포지토리 조회)의 책임이며, 여기서는 다시 정렬하지 않습니다.

저장은 하지 않습니다. 전달받은 블록 객체의 remaining_amount 만 메모리에서 감소시키고,
커밋 여부는 호출자가 결정합니다.
"""

from dataclasses import dataclass, field
from typing import Any, List, Sequence


@dataclass
class BlockDraw:
    """블록 하나에서 차감한 양"""

    block: Any
    amount: int


@dataclass
class AllocationResult:
    """배분 결과"""

    requested: int
    draws: List[BlockDraw] = field(default_factory=list)

    @property
    def allocated(self) -> int:
        return sum(draw.amount for draw in self.draws)

    @property
    def shortfall(self) -> int:
        return self.requested - self.allocated

    @property
    def is_satisfied(self) -> bool:
        return self.shortfall == 0


def allocate(amount: int, blocks: Sequence[Any]) -> AllocationResult:
    """요청 금액을 블록 순서대로 차감

    Args:
        amount: 차감할 포인트 (양수)
        blocks: remaining_amount 속성을 가진 블록 목록 (만료 임박 순)

    Returns:
        AllocationResult: 0이 아닌 차감 내역(블록 순서)과 부족분
    """
    if amount <= 0:
        raise ValueError("Amount must be positive")

    result = AllocationResult(requested=amount)
    still_needed = amount

    for block in blocks:
        if still_needed <= 0:
            break

        drawn = min(block.remaining_amount, still_needed)
        if drawn <= 0:
            continue

        block.remaining_amount -= drawn
        result.draws.append(BlockDraw(block=block, amount=drawn))
        still_needed -= drawn

    return result
