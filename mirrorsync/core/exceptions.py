__all__ = [
    "MirrorSyncError",
    "FetchError",
    "ConfigError",
    "StoreDestroyedError",
    "RegistryError",
]


class MirrorSyncError(Exception):
    """
    Base class for errors raised by this package.
    """


class FetchError(MirrorSyncError):
    """
    Raised when the server baseline for a context could not be retrieved.

    The message is also recorded on the store as `fetch_error`{l=python}; the
    store's existing items are kept.
    """

    context: object

    def __init__(self, message: str, context: object = None):
        self.context = context
        super().__init__(message)


class ConfigError(MirrorSyncError):
    """
    Raised when a configuration file is missing or invalid.
    """

    errors: list[str]

    def __init__(self, errors: list[str]):
        self.errors = errors
        errors_str = "\n".join([e for e in errors])
        super().__init__(f"Errors found in configuration: {errors_str}")


class StoreDestroyedError(MirrorSyncError):
    """
    Raised when a {obj}`Store` is used after {obj}`Store.destroy`.
    """

    def __init__(self, store_id: str):
        super().__init__(f"Attempt to use destroyed store '{store_id}'")


class RegistryError(MirrorSyncError):
    """
    Raised when a store id is registered twice with different stores.
    """
