# giftguard/common/errors.py


class GiftGuardError(Exception):
    """Base class for errors raised by the defense pipeline."""


class StorageError(GiftGuardError):
    """The store could not be reached or a query failed.

    Engines treat this as an infrastructure error and apply their
    configured policy; anything else propagates.
    """


class JobAlreadyRunningError(GiftGuardError):
    def __init__(self, job_name: str):
        super().__init__(f"Job '{job_name}' is already running")
        self.job_name = job_name


class InvalidDefenseActionError(GiftGuardError):
    pass


class ConflictError(StorageError):
    """A write collided with a uniqueness constraint."""
