import pytest

from roomchatd.errors import EmptyMessage, ValidationError
from roomchatd.util import normalize_content, normalize_room_id


def test_normalize_room_id_accepts_ints_and_numeric_strings() -> None:
    assert normalize_room_id(3) == 3
    assert normalize_room_id("12") == 12
    assert normalize_room_id(" room-4 ") == 4


@pytest.mark.parametrize(
    "value", [None, 0, -1, True, "", "general", "room-", 1.5, "²", "room-١٢"]
)
def test_normalize_room_id_rejects(value) -> None:
    with pytest.raises(ValidationError):
        normalize_room_id(value)


def test_normalize_content_trims() -> None:
    assert normalize_content("  hi there \n", max_chars=100) == "hi there"


def test_normalize_content_empty_is_empty_message() -> None:
    with pytest.raises(EmptyMessage):
        normalize_content("   \t\n", max_chars=100)
    # EmptyMessage is a ValidationError with its own code.
    with pytest.raises(ValidationError) as exc:
        normalize_content("", max_chars=100)
    assert exc.value.code == "empty_message"


def test_normalize_content_rejects_bad_values() -> None:
    with pytest.raises(ValidationError):
        normalize_content(123, max_chars=100)
    with pytest.raises(ValidationError):
        normalize_content("x" * 11, max_chars=10)
    with pytest.raises(ValidationError):
        normalize_content("a\x00b", max_chars=10)


def test_normalize_content_zero_max_disables_limit() -> None:
    assert normalize_content("x" * 5000, max_chars=0) == "x" * 5000
