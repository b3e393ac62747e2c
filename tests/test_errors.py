"""
Tests for the error hierarchy.
"""

from __future__ import annotations

import pytest

from raspi_monitor.errors import (
    CollectionError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    MonitorError,
    NotFoundError,
    NotificationError,
    StorageError,
    UnavailableError,
)


class TestMonitorError:
    """Tests for the MonitorError base class."""

    def test_attributes(self) -> None:
        error = MonitorError("invalid_argument", "range must be a number", {"range": "x"})

        assert error.error_code == "invalid_argument"
        assert error.message == "range must be a number"
        assert error.details == {"range": "x"}
        assert str(error) == "range must be a number"

    def test_details_default_to_empty(self) -> None:
        assert MonitorError("internal", "boom").details == {}

    def test_to_dict(self) -> None:
        d = NotFoundError("no such endpoint", {"path": "/x"}).to_dict()

        assert d == {
            "error_code": "not_found",
            "message": "no such endpoint",
            "details": {"path": "/x"},
        }

    def test_repr(self) -> None:
        assert repr(InternalError("boom")) == (
            "InternalError(error_code='internal', message='boom', details={})"
        )


class TestSubclasses:
    @pytest.mark.parametrize(
        ("cls", "code"),
        [
            (InvalidArgumentError, "invalid_argument"),
            (NotFoundError, "not_found"),
            (UnavailableError, "unavailable"),
            (StorageError, "unavailable"),
            (NotificationError, "unavailable"),
            (FailedPreconditionError, "failed_precondition"),
            (CollectionError, "collection_failed"),
            (InternalError, "internal"),
        ],
    )
    def test_error_codes(self, cls: type[MonitorError], code: str) -> None:
        error = cls("message")

        assert isinstance(error, MonitorError)
        assert error.error_code == code

    def test_storage_error_is_unavailable(self) -> None:
        with pytest.raises(UnavailableError):
            raise StorageError("db locked", {"operation": "insert raw samples"})
