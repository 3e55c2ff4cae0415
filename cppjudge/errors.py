class JudgeError(Exception):
    """Base class for pipeline errors."""


class NotFound(JudgeError):
    """A submission, problem or test case does not exist."""


class NoTestCases(JudgeError):
    """The problem has nothing to grade against."""


class InternalError(JudgeError):
    """The execution backend could not produce an outcome."""


class ContractViolation(JudgeError):
    """A write referenced records that do not belong together."""


class StoreError(JudgeError):
    """The store failed to read or write."""


class DispatcherBusy(JudgeError):
    """The dispatch queue is full."""


class DispatcherClosed(JudgeError):
    """The dispatcher is not accepting work."""
