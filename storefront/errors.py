"""Errors raised by the storefront domain code and rendered by the app."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StorefrontError):
    """Raised when a required field is missing or malformed."""

    status_code = 400


class AuthenticationError(StorefrontError):
    """Raised when credentials are missing or wrong."""

    status_code = 401


class AuthorizationError(StorefrontError):
    """Raised when the caller's role or ownership does not allow the action."""

    status_code = 403


class NotFoundError(StorefrontError):
    """Raised when an identifier does not resolve to a stored record."""

    status_code = 404

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(f"{resource} not found")
