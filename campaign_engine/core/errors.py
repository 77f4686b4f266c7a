"""Error taxonomy for the campaign engine.

Validation and conflict errors surface synchronously to callers of the
definition-management operations. DispatchError is recorded on the step
execution and never escapes the poller. ConsistencyError marks data that
should not exist (a step execution pointing at a missing step definition);
the affected item is skipped and logged, not retried.
"""


class CampaignEngineError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CampaignEngineError):
    status_code = 422


class NotFoundError(CampaignEngineError):
    status_code = 404


class ConflictError(CampaignEngineError):
    status_code = 409


class DuplicateNameError(ValidationError, ConflictError):
    status_code = 409


class DispatchError(CampaignEngineError):
    status_code = 502


class ConsistencyError(CampaignEngineError):
    status_code = 500
