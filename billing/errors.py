"""
Purchase failure codes. The code is what clients branch on; the message is safe to show to users.
"""

INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
ALREADY_PURCHASED = "ALREADY_PURCHASED"
ADULT_CONTENT_METHOD_FORBIDDEN = "ADULT_CONTENT_METHOD_FORBIDDEN"
PROCESSOR_ERROR = "PROCESSOR_ERROR"
COMPENSATION_FAILED = "COMPENSATION_FAILED"
INVALID_REQUEST = "INVALID_REQUEST"
NOT_FOUND = "NOT_FOUND"
REQUEST_IN_PROGRESS = "REQUEST_IN_PROGRESS"
UNAUTHORIZED = "UNAUTHORIZED"

# HTTP status used by the JSON views for each code
HTTP_STATUS = {
    INSUFFICIENT_BALANCE: 402,
    ALREADY_PURCHASED: 409,
    ADULT_CONTENT_METHOD_FORBIDDEN: 403,
    PROCESSOR_ERROR: 502,
    COMPENSATION_FAILED: 500,
    INVALID_REQUEST: 400,
    NOT_FOUND: 404,
    REQUEST_IN_PROGRESS: 409,
    UNAUTHORIZED: 401,
}

DEFAULT_MESSAGES = {
    INSUFFICIENT_BALANCE: "Not enough points.",
    ALREADY_PURCHASED: "You have already purchased this post.",
    ADULT_CONTENT_METHOD_FORBIDDEN: "This content can only be purchased with points.",
    PROCESSOR_ERROR: "Payment could not be started. Please try again.",
    COMPENSATION_FAILED: "Your payment needs manual review. Our team has been notified.",
    INVALID_REQUEST: "Invalid request.",
    NOT_FOUND: "Not found.",
    REQUEST_IN_PROGRESS: "This request is already being processed.",
    UNAUTHORIZED: "Please sign in.",
}


class PurchaseError(Exception):
    """Raised by purchase services; carries a stable code and a user-safe message."""

    def __init__(self, code: str, message: str = None):
        self.code = code
        self.message = message or DEFAULT_MESSAGES.get(code, "Purchase failed.")
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS.get(self.code, 400)
