"""
Error handling utilities with retry logic and failure classification
"""
import time
from typing import Callable, Any, Optional, Dict
from functools import wraps

from billflow.core.models.state import ErrorCode
from billflow.core.utils.helpers import truncate_text, utcnow
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class RetryPolicy:
    """Retry policy configuration"""

    def __init__(
        self,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        exponential: bool = True
    ):
        """
        Initialize retry policy

        Args:
            max_retries: Maximum number of retry attempts
            backoff_seconds: Base backoff time in seconds
            exponential: Use exponential backoff if True, constant if False
        """
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.exponential = exponential

    def get_backoff_time(self, attempt: int) -> float:
        """
        Calculate backoff time for a given attempt

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Backoff time in seconds
        """
        if self.exponential:
            return self.backoff_seconds * (2 ** attempt)
        return self.backoff_seconds


class BillProcessingError(Exception):
    """Base exception for utility bill processing errors"""

    code = ErrorCode.PIPELINE_FAILED

    def __init__(
        self,
        message: str,
        node: Optional[str] = None,
        recoverable: bool = True,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.node = node
        self.recoverable = recoverable
        self.details = details or {}
        self.timestamp = utcnow().isoformat()


class PreprocessError(BillProcessingError):
    """Image could not be decoded or normalized"""
    code = ErrorCode.PREPROCESS_FAILED


class TemplateRecognitionError(BillProcessingError):
    """Template OCR (Track A) failed"""
    code = ErrorCode.TEMPLATE_OCR_FAILED


class RecognitionError(BillProcessingError):
    """General OCR (Track B) failed"""
    code = ErrorCode.GENERAL_OCR_FAILED


class NormalizationError(BillProcessingError):
    """Language model extraction failed or returned unusable output"""
    code = ErrorCode.LLM_FAILED


class StorageError(BillProcessingError):
    """Artifact storage read/write failed"""
    code = ErrorCode.STORAGE_FAILED


class DocumentNotFoundError(BillProcessingError):
    """Document does not exist"""

    def __init__(self, document_id: str):
        super().__init__(f"Utility bill not found: {document_id}", recoverable=False)
        self.document_id = document_id


class OwnershipError(BillProcessingError):
    """Caller does not own the document"""

    def __init__(self, document_id: str, caller_id: str):
        super().__init__(
            f"Caller {caller_id} does not own utility bill {document_id}",
            recoverable=False
        )
        self.document_id = document_id


class InvalidTransitionError(BillProcessingError):
    """Requested status change is not allowed from the current status"""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class InvalidUploadError(BillProcessingError):
    """Uploaded file is empty or of an unsupported type"""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


def with_retry(
    retry_policy: Optional[RetryPolicy] = None,
    exceptions: tuple = (Exception,),
    on_retry: Optional[Callable] = None
):
    """
    Decorator to add retry logic to a function

    Args:
        retry_policy: RetryPolicy instance, defaults to 3 retries with 2s backoff
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function called on each retry

    Usage:
        @with_retry(retry_policy=RetryPolicy(max_retries=3))
        def call_service():
            ...
    """
    if retry_policy is None:
        retry_policy = RetryPolicy()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            last_exception = None

            for attempt in range(retry_policy.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e

                    if attempt < retry_policy.max_retries:
                        backoff = retry_policy.get_backoff_time(attempt)
                        logger.warning(
                            f"Attempt {attempt + 1}/{retry_policy.max_retries + 1} failed for {func.__name__}: {e}. "
                            f"Retrying in {backoff}s..."
                        )

                        if on_retry:
                            on_retry(attempt, e)

                        time.sleep(backoff)
                    else:
                        logger.error(
                            f"All {retry_policy.max_retries + 1} attempts failed for {func.__name__}: {e}"
                        )

            # All retries exhausted
            raise last_exception

        return wrapper
    return decorator


class ErrorHandler:
    """
    Turns exceptions raised inside pipeline stages into the
    error code / message pair recorded on the document
    """

    def __init__(self, max_message_length: int = 500):
        self.max_message_length = max_message_length

    def handle_error(
        self,
        error: Exception,
        node: str,
        document_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Classify and log an error that occurred during a stage

        Args:
            error: The exception that occurred
            node: Name of the node where the error occurred
            document_id: Document being processed

        Returns:
            Error information dictionary
        """
        if isinstance(error, BillProcessingError):
            code = error.code
            message = error.message
            recoverable = error.recoverable
        else:
            code = ErrorCode.PIPELINE_FAILED
            message = str(error) or type(error).__name__
            recoverable = True

        error_info = {
            'timestamp': utcnow().isoformat(),
            'node': node,
            'document_id': document_id,
            'error_type': type(error).__name__,
            'code': ErrorCode(code).value,
            'message': truncate_text(message, self.max_message_length),
            'recoverable': recoverable
        }

        if isinstance(error, BillProcessingError):
            logger.warning(f"{node} failed for {document_id}: [{error_info['code']}] {error_info['message']}")
        else:
            logger.error(f"Unexpected error in {node} for {document_id}: {error}", exc_info=error)

        return error_info
