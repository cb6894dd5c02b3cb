class AuthError(RuntimeError):
    pass


class UnauthorizedError(AuthError):
    """The server rejected the credentials; the session cannot be recovered."""


class TransientAuthError(AuthError):
    """Refresh failed for a reason that may clear up by the next tick."""


class FetchError(RuntimeError):
    pass


class UnauthenticatedError(FetchError):
    pass


class NetworkError(FetchError):
    pass


class DecodeError(FetchError):
    pass


class AlertError(RuntimeError):
    pass


class AlertSchedulingError(AlertError):
    pass
