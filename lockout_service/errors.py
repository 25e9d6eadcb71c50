class LockoutError(Exception):
    """Base class for lockout service errors."""


class AccountNotFound(LockoutError):
    def __init__(self, account_id: str):
        super().__init__(f"No lockout record for account: {account_id}")
        self.account_id = account_id


class InvalidPolicy(LockoutError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors) or "invalid policy")
        self.errors = errors


class StorageUnavailable(LockoutError):
    """The ledger could not be read or written. Callers may retry."""

    retryable = True


class NotificationDeliveryFailed(LockoutError):
    def __init__(self, channel: str, account_id: str | None, reason: str):
        super().__init__(f"{channel} notification for {account_id} failed: {reason}")
        self.channel = channel
        self.account_id = account_id


class StatisticsUnavailable(LockoutError):
    pass
