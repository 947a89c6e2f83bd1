"""
Domain errors raised by the orchestration layer.

The API layer maps these to HTTP status codes in one place (main.py);
anything not derived from StorePlatformError is an unexpected 500.
"""


class StorePlatformError(Exception):
    pass


class StoreNotFoundError(StorePlatformError):
    def __init__(self, store_id: str):
        super().__init__(f"Store '{store_id}' not found")
        self.store_id = store_id


class StoreLimitExceededError(StorePlatformError):
    def __init__(self, limit: int):
        super().__init__(f"Maximum store limit reached ({limit})")
        self.limit = limit


class InvalidTransitionError(StorePlatformError):
    pass


class ProvisioningError(StorePlatformError):
    pass


class EngineNotImplementedError(ProvisioningError):
    pass


class ProvisioningTimeoutError(ProvisioningError):
    pass


class StoreDeletionError(StorePlatformError):
    pass
