"""Exception types raised by the sdtexture client.

Every failure surfaced to callers derives from :class:`SDTextureError`, so a
front end can catch one type, log it and clear its progress indicator.

========================  =====================================================
Exception                 Raised when
========================  =====================================================
``BackendUnavailable``    Transport failure or a non-2xx status
``MalformedResponse``     2xx status but the body does not match the schema
``EmptyResult``           The server answered successfully with zero images
``AlreadyInProgress``     A call was attempted while another one is running
``Timeout``               No response within the configured window
``InvalidParameter``      Local validation failed before any network call
========================  =====================================================
"""


class SDTextureError(Exception):
    """Base class for all sdtexture errors."""

    pass


class BackendUnavailable(SDTextureError):
    """The backend could not be reached or answered with an error status.

    Attributes:
        url: Request URL
        status: HTTP status code, or None for transport failures
        body: Response text, if any
        request_body: Serialised request body, when it helps diagnose the error
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status: int | None = None,
        body: str | None = None,
        request_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status = status
        self.body = body
        self.request_body = request_body


class MalformedResponse(SDTextureError):
    """The backend answered 2xx but the body could not be understood."""

    pass


class EmptyResult(SDTextureError):
    """The backend finished the job but returned no images.

    This is a recoverable condition: the server is reachable and the request
    was accepted, so the caller may report it and try again.
    """

    pass


class AlreadyInProgress(SDTextureError):
    """A client operation was attempted while another one is outstanding."""

    pass


class Timeout(SDTextureError, TimeoutError):
    """Waiting for the backend exceeded the configured window.

    The server may keep working on the job; the protocol has no way to
    cancel it.
    """

    pass


class InvalidParameter(SDTextureError, ValueError):
    """A parameter has no safe default and cannot be sent to the backend."""

    pass
