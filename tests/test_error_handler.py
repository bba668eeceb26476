import pytest

from billflow.core.models.state import ErrorCode
from billflow.core.utils.error_handler import (
    ErrorHandler,
    NormalizationError,
    RetryPolicy,
    StorageError,
    with_retry,
)


def test_backoff_times():
    assert RetryPolicy(backoff_seconds=2.0).get_backoff_time(2) == 8.0
    assert RetryPolicy(backoff_seconds=2.0, exponential=False).get_backoff_time(2) == 2.0


def test_with_retry_recovers_from_transient_errors():
    attempts = []
    retried = []

    @with_retry(RetryPolicy(max_retries=2, backoff_seconds=0), exceptions=(ConnectionError,),
                on_retry=lambda attempt, error: retried.append(attempt))
    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    assert flaky() == "ok"
    assert len(attempts) == 3
    assert retried == [0, 1]


def test_with_retry_gives_up_after_max_retries():
    attempts = []

    @with_retry(RetryPolicy(max_retries=1, backoff_seconds=0), exceptions=(ConnectionError,))
    def always_down():
        attempts.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        always_down()
    assert len(attempts) == 2


def test_with_retry_does_not_retry_other_errors():
    attempts = []

    @with_retry(RetryPolicy(max_retries=3, backoff_seconds=0), exceptions=(ConnectionError,))
    def invalid():
        attempts.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        invalid()
    assert len(attempts) == 1


def test_handle_error_uses_processing_error_code():
    info = ErrorHandler().handle_error(
        NormalizationError("LLM returned invalid JSON"), node='LLM_NORMALIZE', document_id='doc-1'
    )
    assert info['code'] == ErrorCode.LLM_FAILED.value
    assert info['node'] == 'LLM_NORMALIZE'
    assert info['document_id'] == 'doc-1'
    assert info['error_type'] == 'NormalizationError'
    assert info['recoverable'] is True


def test_handle_error_classifies_unexpected_exceptions():
    info = ErrorHandler().handle_error(KeyError('scan_path'), node='PREPROCESS')
    assert info['code'] == ErrorCode.PIPELINE_FAILED.value
    assert 'scan_path' in info['message']


def test_handle_error_truncates_messages():
    info = ErrorHandler(max_message_length=50).handle_error(StorageError("x" * 200), node='PREPROCESS')
    assert info['code'] == ErrorCode.STORAGE_FAILED.value
    assert len(info['message']) == 50
