"""
Exceptions raised by the grade aggregation engine.

Input errors (scores outside 0-100, weights not summing to 100) use Django's
ValidationError so they surface the same way model validation does.
An average that cannot be computed yet is not an error: it is returned as None.
"""


class GradingError(Exception):
    """Base class for grading engine errors."""


class MissingDependencyError(GradingError):
    """A recalculation chain cannot run, e.g. the student has no grades in the class."""


class AmbiguousClassError(MissingDependencyError):
    """A read without class_id matched grades in more than one class."""


class StaleResultError(GradingError):
    """A stored result was derived from inputs that have since changed."""

    def __init__(self, key, reason):
        self.key = key
        self.reason = reason
        super().__init__(f"{key} is stale: {reason}")


class StaleConfigError(StaleResultError):
    """A stored result was computed under an assessment config that has since changed."""

    def __init__(self, key, stored_version, current_version):
        self.stored_version = stored_version
        self.current_version = current_version
        super().__init__(
            key,
            f"computed under config {stored_version}, current config is {current_version}"
        )


class PartialBatchFailure(GradingError):
    """One or more chains of a class recalculation failed."""

    def __init__(self, batch):
        self.batch = batch
        self.failures = batch.failures
        super().__init__(
            f"{len(batch.failures)} chain(s) failed while recalculating class "
            f"{batch.class_id} ({len(batch.successes)} succeeded)"
        )
