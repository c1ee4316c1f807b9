"""Error taxonomy shared by the evaluation and experimentation services."""


class FlagLabError(Exception):
    """Base class for all FlagLab service errors."""
    pass


class DefinitionNotFound(FlagLabError):
    """Raised when a flag or experiment definition does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ValidationError(FlagLabError):
    """Raised when a definition is rejected before persistence."""
    pass


class NotRunning(FlagLabError):
    """Raised when an experiment is not in the state an operation requires."""
    pass


class NotEligible(FlagLabError):
    """Raised when a subject is excluded by an experiment's targeting rules."""
    pass


class StoreUnavailable(FlagLabError):
    """Raised when a definition or participation store call fails."""
    pass
