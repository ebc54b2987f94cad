class ClientError(Exception):
    pass

class AuthenticationMissing(ClientError):
    """No signed-in identity to act for."""

    def __init__(self, message: str = "not authenticated"):
        super().__init__(message)

class NetworkOrServerError(ClientError):
    """A request failed in transit or the server answered with an error."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code

class VerificationTimeout(ClientError):
    """The payment was not confirmed within the verification window."""
