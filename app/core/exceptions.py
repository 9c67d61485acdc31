"""
Exception hierarchy for the payout router.

Each exception carries an `http_status_code` for automatic handler mapping.
`to_dict()` returns full internal details (for logging) and `to_safe_dict()`
returns a sanitized response (for client-facing APIs).

Side-effect failures (ExternalDeliveryError, SourceUnavailableError,
AggregationError) are logged by the component that triggered them and are
never propagated as a failure of the primary operation.
"""

from typing import Optional, Dict, Any


class BaseAppError(Exception):
    """Base exception for all application-specific errors"""

    http_status_code: int = 500

    def __init__(self, message: str, details: str = None, context: Dict[str, Any] = None):
        self.message = message
        self.details = details
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Full details for internal logging; never send to client."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "context": self.context,
        }

    def to_safe_dict(self) -> Dict[str, Any]:
        """Sanitized response safe for end-users; no internal details."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
        }


class PayoutValidationError(BaseAppError):
    """Raised when payout input is malformed or out of bounds (never retried)"""

    http_status_code: int = 400

    def __init__(self, message: str, field: str = None, value: Any = None):
        self.field = field
        self.value = value
        context = {}

        if field:
            context["field"] = field
            if value is not None:
                context["invalid_value"] = str(value)

        details = f"Validation failed for field: {field}" if field else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        if self.field:
            result["field"] = self.field
        return result


class NoOperatorsAvailableError(BaseAppError):
    """Raised when a payout was created but nobody can fulfil it (transaction is FAILED)"""

    http_status_code: int = 503

    def __init__(self, tx_id: str, amount: Any = None):
        self.tx_id = tx_id
        context = {"tx_id": tx_id}
        if amount is not None:
            context["amount"] = str(amount)
        super().__init__(
            "No operators available",
            f"No eligible operator for transaction {tx_id}",
            context,
        )

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        result["tx_id"] = self.tx_id
        return result


class StaleStateError(BaseAppError):
    """Raised when a conditional update found the transaction no longer in the expected state"""

    http_status_code: int = 409

    def __init__(self, tx_id: str, expected: Any = None, actual: Optional[str] = None):
        self.tx_id = tx_id
        self.expected = expected
        self.actual = actual
        context = {"tx_id": tx_id}
        if expected is not None:
            context["expected"] = str(expected)
        if actual is not None:
            context["actual"] = actual
        super().__init__(
            "Transaction is no longer available",
            f"Transaction {tx_id} left the expected state",
            context,
        )

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        result["tx_id"] = self.tx_id
        return result


class UnauthorizedOperatorError(BaseAppError):
    """Raised when an operator acts on a transaction assigned to someone else"""

    http_status_code: int = 403

    def __init__(self, tx_id: str, operator_id: Any):
        self.tx_id = tx_id
        self.operator_id = operator_id
        super().__init__(
            "Operator is not assigned to this transaction",
            f"Operator {operator_id} is not assigned to {tx_id}",
            {"tx_id": tx_id, "operator_id": str(operator_id)},
        )


class NotFoundError(BaseAppError):
    """Raised when a requested resource is not found"""

    http_status_code: int = 404

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found",
            f"{resource} with id '{identifier}' does not exist",
            {"resource": resource, "identifier": identifier},
        )


class SecurityError(BaseAppError):
    """Raised for authentication failures (e.g., invalid API token)"""

    http_status_code: int = 401

    def __init__(self, message: str, security_context: str = None):
        self.security_context = security_context
        context = {}
        if security_context:
            context["security_context"] = security_context

        details = f"Security failure in: {security_context}" if security_context else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose security_context to clients."""
        return {
            "error": "SecurityError",
            "message": self.message,
        }


class ExternalDeliveryError(BaseAppError):
    """Raised when an operator notification or caller callback could not be delivered"""

    http_status_code: int = 502

    def __init__(self, message: str, channel: str, target: str = None):
        self.channel = channel
        self.target = target
        context = {"channel": channel}
        if target:
            context["target"] = target
        super().__init__(message, f"Delivery failed on channel: {channel}", context)


class SourceUnavailableError(BaseAppError):
    """Raised when a single rate source fails or returns an invalid payload"""

    http_status_code: int = 502

    def __init__(self, source: str, reason: str = None):
        self.source = source
        super().__init__(
            f"Rate source {source} unavailable",
            reason,
            {"source": source},
        )


class AggregationError(BaseAppError):
    """Raised when every rate source failed within one cycle"""

    http_status_code: int = 503

    def __init__(self, pair: str, failures: Dict[str, str] = None):
        self.pair = pair
        self.failures = failures or {}
        super().__init__(
            "No exchange rates were fetched successfully",
            f"All sources failed for {pair}",
            {"pair": pair, "failures": self.failures},
        )


class DatabaseError(BaseAppError):
    """Raised for database operation failures"""

    http_status_code: int = 500

    def __init__(self, message: str, operation: str = None, database_error: str = None):
        self.operation = operation
        self.database_error = database_error
        context = {}
        if operation:
            context["operation"] = operation
        if database_error:
            context["database_error"] = database_error

        details = f"Failed database operation: {operation}" if operation else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose operation names or DB errors to clients."""
        return {
            "error": "DatabaseError",
            "message": "An internal error occurred. Please try again later.",
        }


class ConfigurationError(BaseAppError):
    """Raised for configuration-related issues (missing env vars, invalid settings)"""

    http_status_code: int = 500

    def __init__(self, message: str, config_key: str = None, expected_value: str = None):
        self.config_key = config_key
        self.expected_value = expected_value
        context = {}
        if config_key:
            context["config_key"] = config_key
        if expected_value:
            context["expected_value"] = expected_value

        details = f"Configuration error for: {config_key}" if config_key else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose config internals to clients."""
        return {
            "error": "ConfigurationError",
            "message": "A server configuration error occurred.",
        }

