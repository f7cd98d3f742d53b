"""Exceptions raised across the fetch/persist pipeline."""


class BusTrackerError(Exception):
    """Base class for pipeline errors."""


class FetchFailure(BusTrackerError):
    """The upstream call failed: transport error, timeout, bad status or undecodable body."""

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"Upstream fetch failed: {cause}")


class StoreQueryFailure(BusTrackerError):
    """A read against the position store failed."""

    def __init__(self, cause: BaseException | str) -> None:
        self.cause = cause
        super().__init__(f"Store query failed: {cause}")
