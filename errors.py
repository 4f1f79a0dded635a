"""Error types surfaced to API callers as readable messages."""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'success': False, 'error': self.message, 'type': type(self).__name__}


class ValidationError(ServiceError):
    """Bad or missing input, e.g. an unknown teacher id"""
    status_code = 400


class AuthError(ServiceError):
    """Missing, invalid or expired credential"""
    status_code = 401


class NotFoundError(ServiceError):
    status_code = 404


class ConfigurationError(ServiceError):
    """Mail server settings missing for the acting user"""
    status_code = 409


class NotReadyError(ServiceError):
    """Aggregate artifact requested before the job finished"""
    status_code = 409


class TransportError(ServiceError):
    """SMTP or IMAP failure"""
    status_code = 502


ERROR_TYPES = {
    cls.__name__: cls
    for cls in (ValidationError, AuthError, NotFoundError,
                ConfigurationError, NotReadyError, TransportError)
}
