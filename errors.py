"""Error types raised by the session and schedule services."""


class TrackerError(ValueError):
    """Base class for recoverable tracker errors."""


class EmptyExerciseSet(TrackerError):
    def __init__(self, message: str = "no valid exercises") -> None:
        super().__init__(message)


class NoActiveSession(TrackerError):
    def __init__(self, message: str = "no active workout") -> None:
        super().__init__(message)


class BrokenLinkage(TrackerError):
    """A scheduled workout points at a template or workout that is gone."""


class PlanLinkageUnsupported(BrokenLinkage):
    """Plan linked schedule entries are resolved by the caller."""


class FutureWorkoutNotPerformable(TrackerError):
    def __init__(self, message: str = "cannot perform a workout scheduled for a future date") -> None:
        super().__init__(message)


class StoreWriteFailure(TrackerError):
    """Writing to the persistent store failed."""
