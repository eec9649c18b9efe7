from typing import Optional


class IndexerError(Exception):
    """Base class for every error raised by the indexer."""


class ReferencedEntityMissing(IndexerError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} does not exist")


class InvariantViolation(IndexerError):
    pass


class BalanceUnderflow(InvariantViolation):
    def __init__(self, holder_id: str, balance: int, amount: int):
        self.holder_id = holder_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"sell of {amount} exceeds balance {balance} for holder {holder_id}"
        )


class TerminalStateViolation(InvariantViolation):
    pass


class LaunchStateViolation(InvariantViolation):
    pass


class DecodeError(IndexerError):
    def __init__(self, message: str, payload: Optional[dict] = None):
        self.payload = payload
        super().__init__(message)


class StoreWriteError(IndexerError):
    pass


class OrderingError(IndexerError):
    pass
