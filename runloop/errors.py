from __future__ import annotations


class RunloopError(RuntimeError):
    pass


class FatalRunError(RunloopError):
    """Infrastructure failure that aborts the run without retry."""


class MissingCollaboratorError(FatalRunError):
    def __init__(self, stage: str, collaborator: str) -> None:
        super().__init__(f"{stage}: {collaborator} not available")
        self.stage = stage
        self.collaborator = collaborator


class RunCancelled(RunloopError):
    """Raised at a cooperative checkpoint once cancellation is observed."""
