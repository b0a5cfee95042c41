import pytest

from imagehost.assembler import Assembler
from imagehost.errors import MissingPart
from imagehost.storage import MemoryObjectStorage, PartStore


class _FlakyStorage(MemoryObjectStorage):
    def get_object(self, key: str) -> bytes:
        if key.endswith("/2"):
            raise ConnectionError("reset by peer")
        return super().get_object(key)


def test_assemble_concatenates_in_part_order() -> None:
    part_store = PartStore(MemoryObjectStorage())
    part_store.put("s1", 2, b"efgh")
    part_store.put("s1", 3, b"ij")
    part_store.put("s1", 1, b"abcd")

    assert Assembler(part_store).assemble("s1", 3) == b"abcdefghij"


def test_missing_part_is_named() -> None:
    part_store = PartStore(MemoryObjectStorage())
    part_store.put("s1", 1, b"abcd")

    with pytest.raises(MissingPart) as exc_info:
        Assembler(part_store).assemble("s1", 2)
    assert exc_info.value.part_number == 2
    assert exc_info.value.upload_id == "s1"


def test_read_failures_surface_as_missing_parts() -> None:
    part_store = PartStore(_FlakyStorage())
    part_store.put("s1", 1, b"abcd")
    part_store.put("s1", 2, b"efgh")

    with pytest.raises(MissingPart) as exc_info:
        Assembler(part_store).assemble("s1", 2)
    assert exc_info.value.part_number == 2
    assert exc_info.value.status_code == 502
