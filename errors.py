class LoanError(Exception):
    """
    Base class for business errors.
    Carries the HTTP status and the message shown to the caller.
    """
    status_code = 400
    default_message = "Invalid request"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LoanError):
    default_message = "Invalid data format"


class InsufficientStockError(LoanError):
    default_message = "Not enough quantity available"


class AlreadyFinalizedError(LoanError):
    default_message = "Order has already been returned"


class NotReturnedError(LoanError):
    default_message = "Order has not been returned yet"


class AlreadyValidatedError(LoanError):
    default_message = "Order return has already been validated"


class NotAuthorizedError(LoanError):
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(LoanError):
    status_code = 404
    default_message = "Not found"


class InternalError(LoanError):
    status_code = 500
    default_message = "Internal error, try later"
