"""Exception taxonomy shared by the services.

Every service failure is a ``ServiceError`` carrying the HTTP status the
route boundary should answer with. Expected game outcomes (daily limit,
insufficient balance, bonus already claimed) are not errors and never use
these classes.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    status_code = 400


class InsufficientBalanceError(ServiceError):
    status_code = 400


class VerificationError(ServiceError):
    """On-chain verification rejected the transaction; message is the reason."""

    status_code = 400


class AmountMismatchError(ServiceError):
    status_code = 400


class AuthError(ServiceError):
    status_code = 401


class NoNonceError(AuthError):
    pass


class SignatureMismatchError(AuthError):
    pass


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class DuplicateTransactionError(ServiceError):
    status_code = 409


class PurchaseAlreadyProcessedError(ServiceError):
    status_code = 409


class RateLimitError(ServiceError):
    status_code = 429
