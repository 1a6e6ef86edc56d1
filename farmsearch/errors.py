class AuthError(Exception):
    """
    Base class for failures surfaced to callers of the auth service.

    `message` is safe to show to a user; `code` is stable and machine-readable.
    """

    code = "AUTH_ERROR"
    default_message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code}


class InvalidCredentials(AuthError):
    """Unknown email or wrong password; the two are deliberately indistinguishable."""

    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password."


class EmailAlreadyInUse(AuthError):
    code = "EMAIL_IN_USE"
    default_message = "An account with this email already exists."


class InvalidSignup(AuthError):
    code = "INVALID_SIGNUP"
    default_message = "Unable to sign up. Please check the form and try again."


class HashingUnavailable(AuthError):
    """Raised when the password hashing backend cannot produce a digest."""

    code = "HASHING_UNAVAILABLE"
    default_message = "Secure password hashing is not supported in this environment."
