"""
Domain Errors

Exception taxonomy shared by every engine of the evaluation loop.
"""


class PromptLoopError(Exception):
    """Base class for all evaluation loop errors"""
    pass


class ProviderError(PromptLoopError):
    """The judge provider call failed or timed out"""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ParseError(PromptLoopError):
    """The judge returned output that does not match the expected shape"""
    pass


class NotFoundError(PromptLoopError):
    """A referenced endpoint, record, evaluator or version does not exist"""

    def __init__(self, kind: str, identifier: object):
        super().__init__(f"{kind} with id={identifier} not found")
        self.kind = kind
        self.identifier = identifier


class PolicyNotMetError(PromptLoopError):
    """The backlog is below the activation threshold (a no-op, not a failure)"""

    def __init__(self, backlog_count: int, threshold: int):
        super().__init__(
            f"Backlog of {backlog_count} records is below the activation threshold {threshold}"
        )
        self.backlog_count = backlog_count
        self.threshold = threshold


class StateConflictError(PromptLoopError):
    """An operation does not apply to the current state of an object"""
    pass
