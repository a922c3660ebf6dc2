from __future__ import annotations


class OrchestrationConflict(RuntimeError):
    """A batch is already active, or its operation family has an unfinished run."""


class InvalidBatchConfig(ValueError):
    pass


class NoActiveRun(RuntimeError):
    pass


class RunNotFound(LookupError):
    pass
