class EngagementError(Exception):
    pass


class ValidationError(EngagementError):
    pass


class AuthorizationError(EngagementError):
    pass


class NotFoundError(EngagementError):
    pass


class AlreadyProcessedError(EngagementError):
    pass


class StoreUnavailableError(EngagementError):
    pass


class ListingUnavailableError(EngagementError):
    pass


class InvalidStateTransitionError(EngagementError):
    pass


class UploadError(EngagementError):
    pass
