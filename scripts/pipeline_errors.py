"""Failure taxonomy shared by the staging scripts.

Every pipeline failure is a RuntimeError so the CLI entry points can keep
the simple `except RuntimeError: print FATAL; exit 1` shape.
"""


class PipelineError(RuntimeError):
    """Base class for failures that end a pipeline run."""


class InvalidRequest(PipelineError):
    """PR number is malformed, unknown, or belongs to another repository."""


class DefinitionError(PipelineError):
    """Environment catalog or generated definition is inconsistent."""


class PlanFailure(PipelineError):
    """Terraform init/validate/plan failed. Reported before halting."""

    def __init__(self, message, detail=""):
        super().__init__(message)
        self.detail = detail


class ApplyFailure(PipelineError):
    """Terraform apply failed. Fatal, never retried."""

    def __init__(self, message, detail=""):
        super().__init__(message)
        self.detail = detail


class PersistenceConflict(PipelineError):
    """State could not be persisted (CAS mismatch, rejected push, git failure)."""


class DeploymentFailure(PipelineError):
    """Sync or remote restart on the staging instance failed."""


class DeploymentTimeout(DeploymentFailure):
    """A remote call did not finish within its timeout."""


class ImageBuildFailure(PipelineError):
    """Packer build failed; no image was produced."""
