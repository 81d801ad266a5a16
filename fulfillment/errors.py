class FulfillmentError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(FulfillmentError):
    status_code = 404


class ValidationError(FulfillmentError):
    status_code = 422


class InvalidTransitionError(FulfillmentError):
    status_code = 422

    def __init__(self, message: str, from_status=None, to_status=None):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


class BulkTransitionError(FulfillmentError):
    status_code = 422


class ConcurrentModificationError(FulfillmentError):
    status_code = 409


class WebhookError(FulfillmentError):
    """Failure while processing a payment event.

    `retryable` separates transient infrastructure faults, which stay
    eligible for scheduled retries, from permanent problems with the event
    itself that need manual resolution.
    """

    def __init__(self, message: str, code: str, status_code: int = 500, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
