# src/engine/errors.py
"""
Error taxonomy for the scan engine. The API layer maps each class to an HTTP status.
"""


class BitorError(Exception):
    status_code = 500


class ValidationError(BitorError):
    status_code = 400


class AuthorizationError(BitorError):
    status_code = 401


class NotFoundError(BitorError):
    status_code = 404


class ConflictError(BitorError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    def __init__(self, job_id, current, target):
        super().__init__(f"Scan {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class GenerationError(BitorError):
    """Building the scan artifacts failed before any compute was spent."""


class CredentialError(GenerationError):
    pass


class ArtifactValidationError(BitorError):
    def __init__(self, playbook, output):
        super().__init__(f"playbook validation failed for {playbook}\n{output}")
        self.playbook = playbook
        self.output = output


class ExecutionError(BitorError):
    def __init__(self, message, returncode=None, stderr=""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self):
        base = super().__str__()
        if self.stderr:
            return f"{base}\n{self.stderr}"
        return base


class PersistenceError(BitorError):
    pass
