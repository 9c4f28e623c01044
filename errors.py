"""
Error taxonomy for the storefront API.

Every error carries the HTTP status it maps to; the handlers in main.py
render them as {"error": message}.
"""


class AppError(Exception):
    status_code = 500
    message = "Internal Server Error"

    def __init__(self, message: str = None):
        self.message = message or self.message
        super().__init__(self.message)


# ---------------- AUTH ----------------
class Unauthenticated(AppError):
    status_code = 401
    message = "No authentication token found."


class InvalidToken(AppError):
    status_code = 401
    message = "Invalid or expired token."


class TokenExpired(InvalidToken):
    # Same body as InvalidToken for the client; kept apart for logging.
    pass


class MalformedPayload(AppError):
    status_code = 401
    message = "Invalid token payload."


class InvalidCredentials(AppError):
    status_code = 401
    message = "Invalid credentials"


class Forbidden(AppError):
    status_code = 403
    message = "Admin access required."


# ---------------- LOOKUPS ----------------
class NotFound(AppError):
    status_code = 404
    message = "Not found"


class NotFoundOrUnauthorized(AppError):
    status_code = 404
    message = "Order not found or not authorized."


# ---------------- VALIDATION ----------------
class InvalidPayload(AppError):
    status_code = 400
    message = "Invalid request payload"


class InvalidCartPayload(InvalidPayload):
    message = "Invalid cart payload"


class EmptyCart(AppError):
    status_code = 400
    message = "Cart is empty."


class DuplicateEmail(AppError):
    status_code = 400
    message = "Email is already in use"
