"""
Tests for portal build failure classification
"""

import asyncio

import pytest

from chat.errors import DocumentNotFound, InternalError
from etl.error_handling import ErrorType, Severity, classify_error, describe_failure


@pytest.mark.parametrize("message,error_type", [
    ("read timed out", ErrorType.TIMEOUT),
    ("connection reset by peer", ErrorType.NETWORK),
    ("sqlalchemy.exc.OperationalError", ErrorType.DATABASE),
    ("429 quota exceeded", ErrorType.EXTERNAL_API),
    ("invalid CV structure", ErrorType.VALIDATION),
    ("something odd", ErrorType.INTERNAL),
])
def test_classify_by_message(message, error_type):
    assert classify_error(RuntimeError(message))[0] == error_type


def test_first_matching_rule_wins():
    # "connection" and "database" both match; network is checked first
    assert classify_error(RuntimeError("database connection lost"))[0] == ErrorType.NETWORK


def test_timeout_exception():
    assert classify_error(asyncio.TimeoutError()) == (ErrorType.TIMEOUT, Severity.WARNING, True)


def test_missing_document_is_validation():
    assert classify_error(DocumentNotFound(processed_cv_id="cv_1"))[:2] == (ErrorType.VALIDATION, Severity.INFO)


class TestDescribeFailure:

    def test_timeout_message(self):
        failure = describe_failure(asyncio.TimeoutError(), timeout_seconds=60.0)

        assert failure.code == "TIMEOUT"
        assert failure.message == "Portal build timed out after 60.0s"
        assert failure.retryable is True

    def test_service_error_uses_public_message(self):
        failure = describe_failure(DocumentNotFound(processed_cv_id="cv_1"))

        assert failure.code == "VALIDATION_ERROR"
        assert failure.message == "Processed CV not found"

    def test_internal_service_error(self):
        failure = describe_failure(InternalError())

        assert failure.code == "INTERNAL_ERROR"
        assert failure.message == "Internal server error"

    def test_empty_exception_message(self):
        assert describe_failure(KeyError()).message == "KeyError"
