import pytest

from errors import LibraryError, ValidationError
from utils.validators import FieldValidator


def test_require_text_strips():
    assert FieldValidator.require_text("  Sam ", "borrower_name") == "Sam"

@pytest.mark.parametrize("value", [None, "", "   "])
def test_require_text_rejects_blank(value):
    with pytest.raises(ValidationError, match="borrower_name is required"):
        FieldValidator.require_text(value, "borrower_name")

def test_optional_text():
    assert FieldValidator.optional_text(None) is None
    assert FieldValidator.optional_text("  ") is None
    assert FieldValidator.optional_text(" Fiction ") == "Fiction"

@pytest.mark.parametrize("value, expected", [(3, 3), ("7", 7), (" 12 ", 12), ("-2", -2), ("+4", 4)])
def test_integer_accepts_ints_and_numeric_strings(value, expected):
    assert FieldValidator.integer(value, "copies") == expected

@pytest.mark.parametrize("value", [True, False, 2.0, 1.5, "1.5", "two", [1]])
def test_integer_rejects_non_integers(value):
    with pytest.raises(ValidationError, match="copies must be an integer"):
        FieldValidator.integer(value, "copies")

def test_integer_requires_value():
    with pytest.raises(ValidationError, match="count is required"):
        FieldValidator.integer(None, "count")

def test_range_checks():
    assert FieldValidator.non_negative_int(0, "year") == 0
    assert FieldValidator.positive_int("1", "copies") == 1
    with pytest.raises(ValidationError, match="year must be 0 or more"):
        FieldValidator.non_negative_int(-1, "year")
    with pytest.raises(ValidationError, match="copies must be at least 1"):
        FieldValidator.positive_int(0, "copies")

def test_error_payload():
    try:
        FieldValidator.positive_int(0, "copies")
    except LibraryError as e:
        assert e.to_dict() == {
            "error": "validation_error",
            "message": "copies must be at least 1",
            "details": {"field": "copies", "value": 0},
        }
    else:
        pytest.fail("ValidationError was not raised")
