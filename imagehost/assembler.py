from collections.abc import Iterator

from imagehost.errors import MissingPart
from imagehost.storage import PartStore


class Assembler:
    def __init__(self, part_store: PartStore) -> None:
        self.part_store = part_store

    def iter_parts(self, session_id: str, total_parts: int) -> Iterator[bytes]:
        for part_number in range(1, total_parts + 1):
            try:
                yield self.part_store.get(session_id, part_number)
            except MissingPart:
                raise
            except Exception as exc:
                raise MissingPart(
                    f"failed to read part {part_number}: {exc}",
                    upload_id=session_id,
                    part_number=part_number,
                ) from exc

    def assemble(self, session_id: str, total_parts: int) -> bytes:
        return b"".join(self.iter_parts(session_id, total_parts))
