# Structured exception hierarchy for CopyTrader Cloud

from typing import Dict, Any, Optional, Sequence
from datetime import datetime, timezone


class CopyTraderException(Exception):
    """Base exception for all CopyTrader specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)


class TransientError(CopyTraderException):
    """Errors that may clear up on a later attempt (next poll tick)"""
    pass


class PermanentError(CopyTraderException):
    """Errors that will not clear up without a change of input or state"""
    pass


# Provisioning and process errors
class CommandError(TransientError):
    """An external command failed or timed out"""

    def __init__(self, message: str, argv: Sequence[str], returncode: Optional[int] = None,
                 stderr: str = "", timed_out: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out


class ProvisioningError(PermanentError):
    """A launch step failed; the launch attempt is abandoned"""

    def __init__(self, message: str, tenant_id: int, step: str, **kwargs):
        super().__init__(message, **kwargs)
        self.tenant_id = tenant_id
        self.step = step


class TeardownError(TransientError):
    """A best-effort teardown action failed"""

    def __init__(self, message: str, tenant_id: int, action: str, **kwargs):
        super().__init__(message, **kwargs)
        self.tenant_id = tenant_id
        self.action = action


class DisplayPoolExhaustedError(ProvisioningError):
    """Every virtual display slot is held by another tenant"""

    def __init__(self, tenant_id: int, pool_size: int):
        super().__init__(
            f"No free virtual display for tenant {tenant_id} (pool size {pool_size})",
            tenant_id=tenant_id,
            step="display",
        )
        self.pool_size = pool_size


# Control-plane errors
class CoordinatorUnavailableError(TransientError):
    """The agent could not complete a request to the coordinator"""

    def __init__(self, message: str, path: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.path = path
        self.status_code = status_code


class AccountNotFoundError(PermanentError):
    def __init__(self, account_id: int):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class InvalidStatusTransitionError(PermanentError):
    """Requested account status change is not allowed from the current status"""

    def __init__(self, account_id: int, current: str, requested: str):
        super().__init__(f"Account {account_id}: cannot move from {current} to {requested}")
        self.account_id = account_id
        self.current = current
        self.requested = requested


# Reconciliation errors
class PayloadValidationError(PermanentError):
    """A push payload is malformed; nothing from it is applied"""

    def __init__(self, message: str, errors: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or []


class ChannelNotFoundError(PermanentError):
    def __init__(self, code: str):
        super().__init__(f"Channel {code} not found")
        self.code = code


class ChannelAuthError(PermanentError):
    """Channel code and master key do not match"""
    pass


class SubscriptionRejectedError(PermanentError):
    """Fetch refused by the subscription gate"""

    def __init__(self, code: str, subscriber_id: str, reason: str):
        super().__init__(f"Subscriber {subscriber_id} refused on {code}: {reason}")
        self.code = code
        self.subscriber_id = subscriber_id
        self.reason = reason


class SubscriptionNotFoundError(PermanentError):
    def __init__(self, subscription_id: int):
        super().__init__(f"Subscription {subscription_id} not found")
        self.subscription_id = subscription_id


class NotChannelOwnerError(PermanentError):
    """Caller does not own the channel it tried to administer"""
    pass


class InvalidSubscriptionTransitionError(PermanentError):
    """Owner action is not allowed from the subscription's current state"""

    def __init__(self, subscription_id: int, current: str, requested: str):
        super().__init__(f"Subscription {subscription_id}: cannot move from {current} to {requested}")
        self.subscription_id = subscription_id
        self.current = current
        self.requested = requested


# Configuration errors
class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    def __init__(self, message: str, config_field: str, **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "transient": isinstance(error, TransientError),
    }

    if isinstance(error, CopyTraderException) and error.details:
        context["error_details"] = error.details
    if isinstance(error, (ProvisioningError, TeardownError)):
        context["tenant_id"] = error.tenant_id
    if isinstance(error, ProvisioningError):
        context["step"] = error.step
    if isinstance(error, CommandError):
        context["argv"] = error.argv[:1]
        context["returncode"] = error.returncode
        context["timed_out"] = error.timed_out

    if additional_context:
        context.update(additional_context)

    return context
