class EFormsError(Exception):
    """Base class for failures the route layer knows how to report."""

    status = 500

    @property
    def message(self):
        return str(self.args[0]) if self.args else self.__class__.__name__


class ValidationFailed(EFormsError, ValueError):
    status = 400


class Unauthorized(EFormsError):
    status = 401


class NotFound(EFormsError, KeyError):
    status = 404


class FormNotFound(NotFound):
    pass


class Conflict(EFormsError, ValueError):
    status = 409


class ReconcileFailed(EFormsError, RuntimeError):
    """A form edit was rolled back; nothing was applied."""

    status = 500
