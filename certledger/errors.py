from flask import jsonify
from pydantic import ValidationError


class LifecycleError(Exception):
    """Base for every failure the certificate lifecycle reports to callers.

    ``kind`` is the stable machine-readable name; ``details`` is merged into
    the JSON error body so a caller can tell "nothing happened" apart from
    "something happened but was not recorded".
    """

    kind = "LifecycleError"
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {"error": self.kind, "message": self.message}
        body.update(self.details)
        return body


class NotFound(LifecycleError):
    kind = "NotFound"
    status_code = 404


class InvalidState(LifecycleError):
    kind = "InvalidState"
    status_code = 409


class ConfigurationMissing(LifecycleError):
    kind = "ConfigurationMissing"
    status_code = 500


class ExternalDependencyFailure(LifecycleError):
    kind = "ExternalDependencyFailure"
    status_code = 502


class LinkageExtractionFailure(LifecycleError):
    """The ledger accepted the transaction but the issued id could not be read back."""

    kind = "LinkageExtractionFailure"
    status_code = 502

    def __init__(self, message, tx_hash=None, **details):
        super().__init__(message, tx_hash=tx_hash, **details)
        self.tx_hash = tx_hash


class ValidationFailed(LifecycleError):
    kind = "ValidationFailed"
    status_code = 400


class CertificateNumberCollision(Exception):
    """Raised by the registry when the unique certificate number constraint rejects an insert."""

    def __init__(self, certificate_number):
        super().__init__(f"certificate number already taken: {certificate_number}")
        self.certificate_number = certificate_number


def register_error_handlers(app):
    @app.errorhandler(LifecycleError)
    def handle_lifecycle_error(exc):
        if exc.status_code >= 500:
            app.logger.error("%s: %s %s", exc.kind, exc.message, exc.details)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc):
        errors = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in exc.errors()
        ]
        return jsonify({"error": ValidationFailed.kind, "message": "invalid request", "fields": errors}), 400
