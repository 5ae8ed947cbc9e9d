"""
協作式期限（Cooperative deadline）

長時間的操作在安全點呼叫 check()；預算用完後，下一個檢查點丟 OperationTimeout，
呼叫端把資料留在之後可以接續的狀態
"""
from core.exceptions import OperationTimeout


class Deadline:
    def __init__(self, operation: str, budget: float, monotonic):
        self.operation = operation
        self.budget = budget
        self._monotonic = monotonic
        self._started = monotonic()

    @property
    def remaining(self) -> float:
        return self.budget - (self._monotonic() - self._started)

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    def check(self):
        if self.expired:
            raise OperationTimeout(self.operation, self.budget)
