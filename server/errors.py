"""
Exceptions raised by the device group and retention services.
"""
from typing import Optional


class DeviceGroupError(Exception):
    """Raised when a device group operation is invalid."""
    pass


class NotFoundError(DeviceGroupError):
    """A required account, device or group does not exist."""
    pass


class AccountNotFoundError(NotFoundError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account does not exist: {account_id}")


class DeviceNotFoundError(NotFoundError):
    def __init__(self, account_id: str, device_id: str):
        self.account_id = account_id
        self.device_id = device_id
        super().__init__(f"Device does not exist: {account_id}/{device_id}")


class GroupNotFoundError(NotFoundError):
    def __init__(self, account_id: str, group_id: str):
        self.account_id = account_id
        self.group_id = group_id
        super().__init__(f"DeviceGroup does not exist: {account_id}/{group_id}")


class StorageUnavailableError(Exception):
    """The database could not be reached or a query failed."""
    pass


class PartialSweepFailure(Exception):
    """
    A delete sweep stopped early on an unexpected error.

    The events deleted before the failure stay deleted; `total` is what
    had been accumulated when the sweep stopped.
    """

    def __init__(self, account_id: str, device_id: str, total: int, cause: Optional[BaseException] = None):
        self.account_id = account_id
        self.device_id = device_id
        self.total = total
        self.cause = cause
        super().__init__(
            f"Sweep aborted reading device {account_id}/{device_id} after {total} events: {cause}"
        )
