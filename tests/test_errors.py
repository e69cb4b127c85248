import pytest

from bulkpick.core.errors import BackendError, ErrorKind, classify_error, is_batch_already_completed, user_message


@pytest.mark.parametrize(
    "code, message, kind",
    [
        (None, "TRANSACTION_ROLLED_BACK: lock timeout", ErrorKind.TRANSACTION_SAFE),
        (None, "TRANSACTION_FAILED: insert failed; ROLLBACK_ALSO_FAILED: connection lost", ErrorKind.TRANSACTION_CRITICAL),
        ("BATCH_ALREADY_COMPLETED", "batch 101 is done", ErrorKind.CONCURRENCY_TRANSIENT),
        (None, "This batch is already completed", ErrorKind.CONCURRENCY_TRANSIENT),
        ("DATABASE_RECORD_NOT_FOUND", "row vanished", ErrorKind.CONCURRENCY_TRANSIENT),
        (None, "INSUFFICIENT_BATCH_QUANTITY: only 2 bags left", ErrorKind.INSUFFICIENT_QUANTITY),
        (None, "Quantity picked is more than Qty Required 75", ErrorKind.VALIDATION),
        (None, "Run 215 is already in PRINT status", ErrorKind.ALREADY_PRINT),
        (None, "Network error: timed out", ErrorKind.NETWORK_UNKNOWN),
    ],
)
def test_classify_error(code, message, kind):
    assert classify_error(code, message) is kind


def test_rolled_back_wrapper_wins_over_inner_tag():
    message = "TRANSACTION_ROLLED_BACK: BATCH_ALREADY_COMPLETED"

    assert classify_error(None, message) is ErrorKind.TRANSACTION_SAFE


def test_backend_error_kind_and_batch_helper():
    err = BackendError("BATCH_ALREADY_COMPLETED: batch 3", code="BATCH_ALREADY_COMPLETED", status=409)

    assert err.kind is ErrorKind.CONCURRENCY_TRANSIENT
    assert is_batch_already_completed(err)
    assert not is_batch_already_completed(BackendError("DATABASE_RECORD_NOT_FOUND"))


def test_user_messages():
    critical = "TRANSACTION_FAILED: x ROLLBACK_ALSO_FAILED: y"

    assert "safe to try again" in user_message(ErrorKind.TRANSACTION_SAFE, "TRANSACTION_ROLLED_BACK: deadlock")
    assert user_message(ErrorKind.TRANSACTION_CRITICAL, critical) == critical
    assert user_message(ErrorKind.NETWORK_UNKNOWN, "boom") == "boom"
