"""
Standardized exception hierarchy for the progression engine
Provides rich context, consistent logging, and user-friendly error messages
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


class ProgressionError(Exception):
    """
    Base exception for all progression engine errors

    Provides:
    - Automatic timestamping
    - Request ID for tracing
    - User-friendly messages
    - Structured context
    - Automatic logging at the class's log level

    Example:
        raise ProgressionError(
            message="Failed to save progression",
            user_id="user-123",
            operation="award_xp",
            context={"idempotency_key": "quest:q1:user:user-123"}
        )
    """

    # Severity used when the error logs itself
    log_level: int = logging.ERROR

    # Whether the caller may retry the same command unchanged
    retryable: bool = False

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message or "An error occurred. Please try again."
        self.timestamp = datetime.now(timezone.utc)

        # Auto-log on creation
        self._log_error()

    def _log_error(self) -> None:
        """Log error with full context"""
        log_data = {
            "error_type": self.__class__.__name__,
            "error_message": self.message,  # Avoid conflict with logging's 'message' field
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation": self.operation,
            "error_context": self.context,  # Avoid conflict with logging's 'context'
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)
            logger.log(
                self.log_level,
                f"{self.__class__.__name__}: {self.message}",
                extra=log_data,
                exc_info=self.cause
            )
        else:
            logger.log(self.log_level, f"{self.__class__.__name__}: {self.message}", extra=log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for API responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat()
        }


# ==========================================
# Validation Errors (Caller Input)
# ==========================================

class ValidationError(ProgressionError):
    """
    Raised when command input fails validation

    Examples:
    - Non-positive XP amount
    - Empty idempotency key
    - Unknown streak type format
    """

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            user_message=f"Invalid {field}: {message}" if field else message,
            context={"field": field, "value": value},
            **kwargs
        )


# ==========================================
# Concurrency & Idempotency
# ==========================================

class ConflictError(ProgressionError):
    """The aggregate changed between read and write (version mismatch)"""

    log_level = logging.INFO
    retryable = True

    def __init__(
        self,
        message: str = "Progression was modified concurrently",
        expected_version: Optional[int] = None,
        **kwargs
    ):
        self.expected_version = expected_version
        super().__init__(
            message=message,
            user_message="Your progress was updated elsewhere. Please try again.",
            context={"expected_version": expected_version},
            **kwargs
        )


class DuplicateEventError(ProgressionError):
    """The idempotency key was already applied; the command is a no-op"""

    log_level = logging.INFO

    def __init__(self, idempotency_key: str, **kwargs):
        self.idempotency_key = idempotency_key
        super().__init__(
            message=f"Event {idempotency_key!r} was already applied",
            user_message="This action was already recorded.",
            context={"idempotency_key": idempotency_key},
            **kwargs
        )


class OperationTimeoutError(ProgressionError):
    """An external call did not finish in time; the outcome is unknown"""

    log_level = logging.WARNING
    retryable = True

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        **kwargs
    ):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            message=message,
            user_message="The request took too long. Please try again.",
            context={"timeout_seconds": timeout_seconds},
            **kwargs
        )


# ==========================================
# Economy Errors
# ==========================================

class InsufficientBalanceError(ProgressionError):
    """Spendable XP does not cover the item's cost"""

    log_level = logging.INFO

    def __init__(
        self,
        balance: int,
        cost: int,
        item_id: Optional[str] = None,
        **kwargs
    ):
        self.balance = balance
        self.cost = cost
        self.item_id = item_id
        self.shortfall = cost - balance
        super().__init__(
            message=f"Insufficient XP balance: need {cost}, have {balance} (short by {self.shortfall})",
            user_message=f"You need {self.shortfall} more XP to purchase this item.",
            context={"balance": balance, "cost": cost, "shortfall": self.shortfall, "item_id": item_id},
            **kwargs
        )


class OutOfStockError(ProgressionError):
    """Reward item stock is tracked and exhausted"""

    log_level = logging.INFO

    def __init__(self, item_id: str, **kwargs):
        self.item_id = item_id
        super().__init__(
            message=f"Reward item {item_id} is out of stock",
            user_message="This reward is out of stock.",
            context={"item_id": item_id},
            **kwargs
        )


# ==========================================
# Quest & Challenge State Errors
# ==========================================

class AlreadyStartedError(ProgressionError):
    """Quest or challenge was already started (benign)"""

    log_level = logging.INFO

    def __init__(self, kind: str, target_id: str, status: Optional[str] = None, **kwargs):
        self.kind = kind
        self.target_id = target_id
        self.status = status
        super().__init__(
            message=f"{kind.capitalize()} {target_id} already started (status: {status})",
            user_message=f"You already started this {kind}.",
            context={"kind": kind, "target_id": target_id, "status": status},
            **kwargs
        )


class AlreadyCompletedError(ProgressionError):
    """Quest or challenge was already completed (benign)"""

    log_level = logging.INFO

    def __init__(self, kind: str, target_id: str, **kwargs):
        self.kind = kind
        self.target_id = target_id
        super().__init__(
            message=f"{kind.capitalize()} {target_id} already completed",
            user_message=f"You already completed this {kind}.",
            context={"kind": kind, "target_id": target_id},
            **kwargs
        )


class NotStartedError(ProgressionError):
    """Completion requested for a quest or challenge that is not in progress"""

    log_level = logging.WARNING

    def __init__(self, kind: str, target_id: str, **kwargs):
        self.kind = kind
        self.target_id = target_id
        super().__init__(
            message=f"{kind.capitalize()} {target_id} is not in progress",
            user_message=f"Start this {kind} before completing it.",
            context={"kind": kind, "target_id": target_id},
            **kwargs
        )


class InvalidTransitionError(ProgressionError):
    """Requested state transition is not allowed from the current state"""

    log_level = logging.WARNING

    def __init__(self, kind: str, target_id: str, from_status: str, to_status: str, **kwargs):
        self.kind = kind
        self.target_id = target_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message=f"Cannot move {kind} {target_id} from {from_status} to {to_status}",
            user_message=f"This {kind} can no longer be changed.",
            context={"kind": kind, "target_id": target_id, "from": from_status, "to": to_status},
            **kwargs
        )


class RequirementsNotMetError(ProgressionError):
    """Submitted evidence does not satisfy the requirements"""

    log_level = logging.INFO

    def __init__(self, kind: str, target_id: str, **kwargs):
        self.kind = kind
        self.target_id = target_id
        super().__init__(
            message=f"Evidence does not satisfy requirements of {kind} {target_id}",
            user_message=f"You haven't met the requirements for this {kind} yet.",
            context={"kind": kind, "target_id": target_id},
            **kwargs
        )


class ChallengeFullError(ProgressionError):
    """Challenge reached its participant capacity"""

    log_level = logging.INFO

    def __init__(self, challenge_id: str, max_participants: Optional[int] = None, **kwargs):
        self.challenge_id = challenge_id
        self.max_participants = max_participants
        super().__init__(
            message=f"Challenge {challenge_id} is full ({max_participants} participants)",
            user_message="This challenge has no places left.",
            context={"challenge_id": challenge_id, "max_participants": max_participants},
            **kwargs
        )


class ChallengeClosedError(ProgressionError):
    """Challenge is outside its start/end window"""

    log_level = logging.INFO

    def __init__(self, challenge_id: str, reason: str, **kwargs):
        self.challenge_id = challenge_id
        self.reason = reason
        user_message = (
            "This challenge has not started yet."
            if reason == "not_started"
            else "This challenge has ended."
        )
        super().__init__(
            message=f"Challenge {challenge_id} is closed ({reason})",
            user_message=user_message,
            context={"challenge_id": challenge_id, "reason": reason},
            **kwargs
        )


# ==========================================
# Streak Errors
# ==========================================

class OutOfOrderEventError(ProgressionError):
    """
    Activity date is earlier than the last recorded activity

    Indicates clock skew or a replayed event. Never corrected silently.
    """

    def __init__(
        self,
        streak_type: str,
        activity_date: Any,
        last_activity_date: Any,
        **kwargs
    ):
        self.streak_type = streak_type
        self.activity_date = activity_date
        self.last_activity_date = last_activity_date
        super().__init__(
            message=(
                f"Out-of-order {streak_type} activity: {activity_date} "
                f"is before last activity {last_activity_date}"
            ),
            user_message="We couldn't record this activity. Please check your device clock.",
            context={
                "streak_type": streak_type,
                "activity_date": str(activity_date),
                "last_activity_date": str(last_activity_date),
            },
            **kwargs
        )


# ==========================================
# Database Errors
# ==========================================

class DatabaseError(ProgressionError):
    """
    Base class for database-related errors
    """
    pass


class ConnectionError(DatabaseError):
    """Database connection failed"""

    retryable = True

    def __init__(self, message: str = "Database connection failed", **kwargs):
        super().__init__(
            message=message,
            user_message="We're having trouble connecting to the database. Please try again in a moment.",
            **kwargs
        )


class QueryError(DatabaseError):
    """Database query execution failed"""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        **kwargs
    ):
        self.query = query
        context = {"query": query, **(kwargs.pop("context", None) or {})}
        super().__init__(
            message=message,
            user_message="We encountered an issue saving your progress. Please try again.",
            context=context,
            **kwargs
        )


class RecordNotFoundError(DatabaseError):
    """Requested record does not exist"""

    log_level = logging.WARNING

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(
            message=message,
            user_message=f"{record_type or 'Record'} not found.",
            context={"record_type": record_type, "record_id": record_id},
            **kwargs
        )


# ==========================================
# Configuration Errors
# ==========================================

class ConfigurationError(ProgressionError):
    """System configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            user_message="The system is not properly configured. Please contact support.",
            context={"config_key": config_key},
            **kwargs
        )


# ==========================================
# Helper Functions
# ==========================================

def wrap_external_exception(
    error: Exception,
    operation: str,
    user_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> ProgressionError:
    """
    Wrap external exceptions (psycopg, httpx, asyncio) into our exception hierarchy

    Args:
        error: Original exception
        operation: What operation was being performed
        user_id: User ID if applicable
        context: Additional context

    Returns:
        Appropriate ProgressionError subclass

    Example:
        try:
            await cur.execute(query)
        except psycopg.Error as e:
            raise wrap_external_exception(e, operation="commit", user_id="user-123")
    """
    # Import here to avoid circular dependencies
    import psycopg
    import httpx

    if isinstance(error, ProgressionError):
        return error

    if isinstance(error, asyncio.TimeoutError):
        return OperationTimeoutError(
            message=f"{operation} timed out",
            user_id=user_id,
            operation=operation,
            cause=error
        )

    # Database errors
    if isinstance(error, psycopg.OperationalError):
        return ConnectionError(
            message=f"Database connection failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
    elif isinstance(error, psycopg.Error):
        return QueryError(
            message=f"Database query failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )

    # HTTP errors from remote collaborators
    elif isinstance(error, httpx.TimeoutException):
        return OperationTimeoutError(
            message=f"{operation} timed out: {str(error)}",
            user_id=user_id,
            operation=operation,
            cause=error
        )

    # Generic fallback
    else:
        return ProgressionError(
            message=f"{operation} failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
