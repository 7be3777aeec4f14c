class ApplicationError(Exception):
    pass


class UnsupportedContentType(ApplicationError):
    """The request was not sent as application/json and was not processed."""


class DecodeError(ApplicationError):
    """The request body is not a valid AdmissionReview."""


class UnmarshalError(ApplicationError):
    """The resource embedded in the request could not be read."""


class EncodeError(ApplicationError):
    """The response could not be serialized."""


class RegistrationError(ApplicationError):
    pass
