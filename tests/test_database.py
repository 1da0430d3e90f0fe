"""
Tests for translating storage-engine failures into storefront errors.
"""
import pytest
from sqlalchemy.exc import DataError, IntegrityError, OperationalError

from storefront.core.errors import ClientInputError, DuplicateError, TransientStorageError
from storefront.data.database import storage_errors


@pytest.mark.parametrize("raised, expected", [
    (IntegrityError("INSERT", {}, Exception("unique")), DuplicateError),
    (DataError("SELECT", {}, Exception("invalid regular expression")), ClientInputError),
    (OperationalError("UPDATE", {}, Exception("database is locked")), TransientStorageError),
])
def test_storage_errors_translation(raised, expected):
    with pytest.raises(expected) as exc_info:
        with storage_errors("find"):
            raise raised
    assert "invalid regular expression" not in exc_info.value.message
    assert exc_info.value.__cause__ is raised


def test_data_error_is_not_retryable():
    with pytest.raises(ClientInputError) as exc_info:
        with storage_errors("find"):
            raise DataError("SELECT", {}, Exception("value out of range"))
    assert not isinstance(exc_info.value, TransientStorageError)
    assert exc_info.value.status_code == 400
