# services/errors.py
"""
Error taxonomy shared by the PM and escalation engines.

Every error carries an HTTP status so the blueprints can map it without
knowing which layer raised it.
"""


class MaintenanceError(Exception):
    """Base class for errors raised by the maintenance automation core"""
    status_code = 500

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(self.message)

    def to_dict(self):
        payload = {"error": self.message, "type": type(self).__name__}
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


class ConfigurationError(MaintenanceError):
    """Missing warehouse scope, malformed rule or bad scheduler setting. Raised before any store mutation."""
    status_code = 400


class NotFoundError(MaintenanceError):
    """Unknown work order, equipment, template, warehouse, profile or job"""
    status_code = 404


class TransientStoreError(MaintenanceError):
    """Store read/write failure. Batches record it per item and continue."""
    status_code = 503


class InvariantViolation(MaintenanceError):
    """An operation that would break a model invariant. Rejected, never coerced."""
    status_code = 409


class DuplicateOpenWorkOrder(InvariantViolation):
    """A second open preventive work order for the same equipment/template pair"""


class RunInProgress(InvariantViolation):
    """A run for the same job and warehouse is still executing"""
