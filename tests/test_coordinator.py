import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from imagehost.assets import AssetRepository
from imagehost.coordinator import UploadCoordinator
from imagehost.db import Base
from imagehost.errors import Incomplete, InvalidRequest, InvalidState, MissingPart, NotFound, StorageError
from imagehost.images import ImageLibrary
from imagehost.imaging import ImageProcessingOptions
from imagehost.publisher import AssetPublisher
from imagehost.registry import SessionStatus, UploadSessionRegistry
from imagehost.shortcode import ShortCodeIssuer
from imagehost.storage import MemoryObjectStorage, PartStore

MIB = 1024 * 1024
START = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class _BlockingPublisher(AssetPublisher):
    def __init__(self, storage) -> None:
        super().__init__(storage, ImageProcessingOptions(enabled=False))
        self.entered = threading.Event()
        self.release = threading.Event()

    def publish(self, data, mime_type, suggested_key):
        self.entered.set()
        assert self.release.wait(timeout=5)
        return super().publish(data, mime_type, suggested_key)


class _BrokenStorage(MemoryObjectStorage):
    def put_object(self, key, data, content_type=None, metadata=None):
        if key.startswith("uploads/"):
            raise RuntimeError("bucket unavailable")
        return super().put_object(key, data, content_type=content_type, metadata=metadata)


def _build(part_size: int = 5 * MIB, storage=None, publisher=None) -> tuple[UploadCoordinator, PartStore]:
    storage = storage or MemoryObjectStorage()
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    assets = AssetRepository(sessionmaker(bind=engine, class_=Session))
    part_store = PartStore(storage)
    registry = UploadSessionRegistry(
        part_size=part_size,
        max_parts=100,
        ttl_seconds=3600,
        allowed_mime_types=frozenset({"image/png", "image/jpeg"}),
        part_store=part_store,
        clock=lambda: START,
    )
    library = ImageLibrary(
        publisher=publisher or AssetPublisher(storage, ImageProcessingOptions(enabled=False)),
        issuer=ShortCodeIssuer(assets.exists),
        assets=assets,
        allowed_mime_types=frozenset({"image/png", "image/jpeg"}),
    )
    return UploadCoordinator(registry, part_store, library), part_store


def _payload(size: int) -> bytes:
    return (bytes(range(251)) * (size // 251 + 1))[:size]


def _split(data: bytes, part_size: int) -> list[bytes]:
    return [data[i : i + part_size] for i in range(0, len(data), part_size)]


def test_twelve_megabyte_upload_in_three_parts() -> None:
    coordinator, part_store = _build()
    data = _payload(12 * MIB)
    session = coordinator.init_upload("photo.png", "image/png", len(data), owner_id="user-a")
    assert session.total_parts == 3

    parts = _split(data, coordinator.part_size)
    receipts = [coordinator.accept_part(session.id, n, part) for n, part in enumerate(parts, start=1)]
    assert [r.progress_percent for r in receipts] == [33, 67, 100]
    assert receipts[-1].status == SessionStatus.uploading

    completed = coordinator.complete_upload(session.id)
    assert completed.asset.size == len(data)
    assert completed.asset.owner_id == "user-a"
    assert completed.asset_url == f"memory://uploads/{completed.short_code}.png"
    assert coordinator.library.publisher.read(completed.asset.storage_key) == data
    assert part_store.session_ids() == set()
    with pytest.raises(NotFound):
        coordinator.get_progress(session.id)


def test_parts_may_arrive_in_any_order() -> None:
    coordinator, _ = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 11)

    coordinator.accept_part(session.id, 3, b"ijk")
    assert coordinator.missing_parts(session.id) == [1, 2]
    coordinator.accept_part(session.id, 1, b"abcd")
    coordinator.accept_part(session.id, 2, b"efgh")

    completed = coordinator.complete_upload(session.id)
    assert coordinator.library.publisher.read(completed.asset.storage_key) == b"abcdefghijk"


def test_complete_with_missing_parts_reports_them() -> None:
    coordinator, _ = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 12)
    coordinator.accept_part(session.id, 2, b"efgh")

    with pytest.raises(Incomplete) as exc_info:
        coordinator.complete_upload(session.id)
    assert exc_info.value.missing_parts == [1, 3]
    assert exc_info.value.progress_percent == 33

    progress = coordinator.get_progress(session.id)
    assert progress.status == SessionStatus.uploading
    assert progress.uploaded_parts == 1


def test_reuploading_a_part_does_not_double_count() -> None:
    coordinator, part_store = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 8)

    coordinator.accept_part(session.id, 1, b"aaaa")
    receipt = coordinator.accept_part(session.id, 1, b"bbbb")
    assert receipt.progress_percent == 50
    assert part_store.get(session.id, 1) == b"bbbb"


def test_part_number_out_of_range() -> None:
    coordinator, part_store = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 8)

    with pytest.raises(NotFound):
        coordinator.accept_part(session.id, 0, b"abcd")
    with pytest.raises(NotFound):
        coordinator.accept_part(session.id, 3, b"abcd")
    assert coordinator.missing_parts(session.id) == [1, 2]
    assert part_store.session_ids() == set()


def test_part_sizes_are_enforced() -> None:
    coordinator, _ = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 10)

    with pytest.raises(InvalidRequest):
        coordinator.accept_part(session.id, 1, b"abc")
    with pytest.raises(InvalidRequest):
        coordinator.accept_part(session.id, 3, b"abcde")
    with pytest.raises(InvalidRequest):
        coordinator.accept_part(session.id, 2, b"")
    assert coordinator.missing_parts(session.id) == [1, 2, 3]


def test_declared_size_mismatch_fails_the_upload() -> None:
    coordinator, part_store = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 10)
    coordinator.accept_part(session.id, 1, b"abcd")
    coordinator.accept_part(session.id, 2, b"efgh")
    coordinator.accept_part(session.id, 3, b"i")

    with pytest.raises(InvalidRequest):
        coordinator.complete_upload(session.id)
    assert coordinator.get_session(session.id).status == SessionStatus.failed
    assert part_store.session_ids() == {session.id}


def test_concurrent_completion_has_one_winner() -> None:
    storage = MemoryObjectStorage()
    publisher = _BlockingPublisher(storage)
    coordinator, _ = _build(part_size=4, storage=storage, publisher=publisher)
    session = coordinator.init_upload("photo.png", "image/png", 4)
    coordinator.accept_part(session.id, 1, b"abcd")

    results: list = []
    winner = threading.Thread(target=lambda: results.append(coordinator.complete_upload(session.id)))
    winner.start()
    assert publisher.entered.wait(timeout=5)

    with pytest.raises(InvalidState):
        coordinator.complete_upload(session.id)
    with pytest.raises(InvalidState):
        coordinator.accept_part(session.id, 1, b"abcd")
    with pytest.raises(InvalidState):
        coordinator.abort_upload(session.id)

    publisher.release.set()
    winner.join(timeout=5)
    assert len(results) == 1
    with pytest.raises(NotFound):
        coordinator.complete_upload(session.id)


def test_concurrent_parts_of_one_session() -> None:
    coordinator, _ = _build(part_size=4)
    data = _payload(4 * 16)
    session = coordinator.init_upload("photo.png", "image/png", len(data))
    errors: list[Exception] = []

    def _send(number: int, part: bytes) -> None:
        try:
            coordinator.accept_part(session.id, number, part)
        except Exception as exc:
            errors.append(exc)

    threads = [
        threading.Thread(target=_send, args=(number, part))
        for number, part in enumerate(_split(data, 4), start=1)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    progress = coordinator.get_progress(session.id)
    assert progress.uploaded_parts == 16
    assert progress.progress_percent == 100
    completed = coordinator.complete_upload(session.id)
    assert coordinator.library.publisher.storage.get_object(completed.asset.storage_key) == data


def test_missing_part_during_completion_fails_the_upload() -> None:
    coordinator, part_store = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 12)
    for number, part in enumerate((b"abcd", b"efgh", b"ijkl"), start=1):
        coordinator.accept_part(session.id, number, part)
    part_store.storage.delete_key(part_store.part_key(session.id, 2))

    with pytest.raises(MissingPart) as exc_info:
        coordinator.complete_upload(session.id)

    assert exc_info.value.part_number == 2
    assert coordinator.get_session(session.id).status == SessionStatus.failed
    assert part_store.get(session.id, 1) == b"abcd"
    assert part_store.get(session.id, 3) == b"ijkl"


def test_publish_failure_keeps_parts_and_marks_failed() -> None:
    coordinator, part_store = _build(part_size=4, storage=_BrokenStorage())
    session = coordinator.init_upload("photo.png", "image/png", 4)
    coordinator.accept_part(session.id, 1, b"abcd")

    with pytest.raises(StorageError):
        coordinator.complete_upload(session.id)
    assert coordinator.get_session(session.id).status == SessionStatus.failed
    assert part_store.get(session.id, 1) == b"abcd"
    with pytest.raises(InvalidState):
        coordinator.complete_upload(session.id)


def test_abort_discards_session_and_parts() -> None:
    coordinator, part_store = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 8)
    coordinator.accept_part(session.id, 1, b"abcd")

    coordinator.abort_upload(session.id)
    assert part_store.session_ids() == set()
    with pytest.raises(NotFound):
        coordinator.get_progress(session.id)


def test_expired_sessions_are_swept() -> None:
    coordinator, part_store = _build(part_size=4)
    session = coordinator.init_upload("photo.png", "image/png", 8)
    coordinator.accept_part(session.id, 1, b"abcd")

    assert coordinator.sweep_expired(START + timedelta(days=2)) == 1
    assert part_store.session_ids() == set()
    with pytest.raises(NotFound):
        coordinator.accept_part(session.id, 2, b"efgh")
