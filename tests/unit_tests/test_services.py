import asyncio

import asyncpg
import pytest

import db
from db import Database
from errors import NotFoundError, StoreFailure, ValidationError
from schemas import ComplaintMetadata
from services import (
    IncomingFile,
    IntakeService,
    QueryService,
    LifecycleService,
    coerce_page_params,
    parse_complaint_id,
)
from tests.fixtures.fake_db import FakePool
from tests.fixtures.uploads import incoming, TEST_IMAGE_CONTENT, TEST_AUDIO_CONTENT


def metadata(**fields):
    return ComplaintMetadata(**fields)


async def submit_many(intake: IntakeService, count: int):
    ids = []
    for i in range(count):
        ids.append(await intake.submit(metadata(full_name=f"Citizen {i}", category="Roads")))
    return ids


# ==========================================================
# Intake
# ==========================================================
async def test_submit_with_files_creates_one_media_row_per_file(database, blobs, store):
    intake = IntakeService(database, blobs)
    files = [
        incoming("photo", "pothole.jpg", TEST_IMAGE_CONTENT),
        incoming("photo", "pothole-2.jpg", TEST_IMAGE_CONTENT),
        incoming("audio", "statement.mp3", TEST_AUDIO_CONTENT),
    ]

    complaint_id = await intake.submit(
        metadata(full_name="Asha Rao", age=34, voter_number="VTR123", gender="female", category="Roads"),
        files,
    )

    media = [m for m in store.tables["complaint_media"].values() if m["complaint_id"] == complaint_id]
    assert len(media) == 3
    assert sorted(m["file_type"] for m in media) == ["audio", "photo", "photo"]
    for row in media:
        assert len(await blobs.read(row["file_path"])) > 0

    complaint = store.tables["complaints"][complaint_id]
    user = store.tables["users"][complaint["user_id"]]
    assert complaint["category"] == "Roads"
    assert user == {"id": user["id"], "full_name": "Asha Rao", "age": 34, "voter_number": "VTR123", "gender": "female"}
    assert store.commits == 1


async def test_submit_without_metadata_or_files(database, blobs, store):
    complaint_id = await IntakeService(database, blobs).submit(metadata())

    complaint = await QueryService(database).get_complaint(complaint_id)
    assert complaint.media == []
    assert complaint.full_name is None
    assert complaint.category is None
    user = store.tables["users"][complaint.user_id]
    assert user["full_name"] is None and user["age"] is None


async def test_media_insert_failure_rolls_back_every_table(database, blobs, store, pool):
    store.fail_on(db.INSERT_MEDIA_SQL, after=1)
    intake = IntakeService(database, blobs)
    files = [incoming("photo", f"p{i}.jpg", TEST_IMAGE_CONTENT) for i in range(3)]

    with pytest.raises(StoreFailure) as excinfo:
        await intake.submit(metadata(full_name="Asha"), files)

    assert isinstance(excinfo.value.cause, asyncpg.exceptions.UniqueViolationError)
    assert store.count("users") == 0
    assert store.count("complaints") == 0
    assert store.count("complaint_media") == 0
    assert store.rollbacks == 1
    assert pool.checked_out == 0
    # blobs written before the transaction stay behind
    assert len(list(blobs.root.iterdir())) == 3


async def test_complaint_insert_failure_rolls_back_user(database, blobs, store):
    store.fail_on(db.INSERT_COMPLAINT_SQL, exc=asyncpg.exceptions.ForeignKeyViolationError("fk"))

    with pytest.raises(StoreFailure, match="Failed to submit complaint"):
        await IntakeService(database, blobs).submit(metadata(full_name="Asha"))

    assert store.count("users") == 0
    assert store.count("complaints") == 0


async def test_oversized_file_aborts_before_database(database, blobs, store):
    files = [
        incoming("photo", "ok.jpg", TEST_IMAGE_CONTENT),
        incoming("video", "huge.mp4", b"x" * (blobs.max_file_size + 1)),
    ]

    with pytest.raises(ValidationError):
        await IntakeService(database, blobs).submit(metadata(), files)

    assert store.executed == []
    assert list(blobs.root.iterdir()) == []


async def test_blob_write_error_is_store_failure(database, blobs, store):
    class BrokenSource:
        async def read(self, size):
            raise OSError("disk unavailable")

    with pytest.raises(StoreFailure, match="Failed to store uploaded file"):
        await IntakeService(database, blobs).submit(metadata(), [IncomingFile("photo", "a.jpg", BrokenSource())])

    assert store.count("complaints") == 0


# ==========================================================
# Query
# ==========================================================
@pytest.mark.parametrize(
    "page, limit, expected",
    [
        (None, None, (1, 100)),
        ("2", "10", (2, 10)),
        ("abc", "xyz", (1, 100)),
        ("0", "-5", (1, 100)),
        (" 3 ", "", (3, 100)),
        (str(2 ** 63), "1" + "0" * 20, (1, 100)),
        (str(2 ** 63 - 1), str(2 ** 63 - 1), (2 ** 63 - 1, 2 ** 63 - 1)),
    ],
)
def test_coerce_page_params(page, limit, expected):
    assert coerce_page_params(page, limit) == expected


@pytest.mark.parametrize("value", ["abc", "0", "-3", str(2 ** 63), None, "1.5"])
def test_parse_complaint_id_rejects_impossible_ids(value):
    with pytest.raises(NotFoundError):
        parse_complaint_id(value)


async def test_list_first_page(database, blobs):
    await submit_many(IntakeService(database, blobs), 5)

    result = await QueryService(database).list_complaints(page=1, limit=2)

    assert len(result.items) == 2
    assert result.pagination.total == 5
    assert result.pagination.total_pages == 3
    assert result.pagination.has_next_page is True
    assert result.pagination.has_prev_page is False


async def test_list_last_page(database, blobs):
    await submit_many(IntakeService(database, blobs), 5)

    result = await QueryService(database).list_complaints(page=3, limit=2)

    assert len(result.items) == 1
    assert result.pagination.current_page == 3
    assert result.pagination.has_next_page is False
    assert result.pagination.has_prev_page is True


async def test_list_is_newest_first(database, blobs):
    ids = await submit_many(IntakeService(database, blobs), 4)

    result = await QueryService(database).list_complaints()

    assert [c.id for c in result.items] == list(reversed(ids))


async def test_list_page_beyond_last_possible_offset_is_empty(database, blobs, store):
    await submit_many(IntakeService(database, blobs), 2)

    result = await QueryService(database).list_complaints(page=str(2 ** 62), limit="4")

    assert result.items == []
    assert result.pagination.total == 2
    assert result.pagination.current_page == 2 ** 62
    assert result.pagination.has_next_page is False
    assert result.pagination.has_prev_page is True
    assert db.SELECT_COMPLAINT_PAGE_SQL not in store.executed


async def test_list_with_oversized_limit_uses_default(database, blobs):
    await submit_many(IntakeService(database, blobs), 3)

    result = await QueryService(database).list_complaints(page="1", limit="1" + "0" * 20)

    assert len(result.items) == 3
    assert result.pagination.limit == 100


async def test_list_empty(database):
    result = await QueryService(database).list_complaints()

    assert result.items == []
    assert result.pagination.total == 0
    assert result.pagination.total_pages == 0
    assert result.pagination.has_next_page is False


async def test_list_attaches_exactly_each_complaints_media(database, blobs, store):
    intake = IntakeService(database, blobs)
    first = await intake.submit(metadata(), [incoming("photo", "a.jpg", TEST_IMAGE_CONTENT)])
    second = await intake.submit(metadata(), [])
    third = await intake.submit(
        metadata(),
        [incoming("audio", "b.mp3", TEST_AUDIO_CONTENT), incoming("photo", "c.png", TEST_IMAGE_CONTENT)],
    )

    result = await QueryService(database).list_complaints()
    by_id = {c.id: c for c in result.items}

    assert [m.file_type for m in by_id[first].media] == ["photo"]
    assert by_id[second].media == []
    assert [m.file_type for m in by_id[third].media] == ["audio", "photo"]
    # one batched media query for the whole page
    assert store.executed.count(db.SELECT_MEDIA_FOR_COMPLAINTS_SQL) == 1


async def test_get_complaint_joins_user_and_media(database, blobs):
    complaint_id = await IntakeService(database, blobs).submit(
        metadata(full_name="Ravi", age=51, voter_number="V-9", gender="male", category="Water"),
        [incoming("audio", "leak.mp3", TEST_AUDIO_CONTENT)],
    )

    complaint = await QueryService(database).get_complaint(str(complaint_id))

    assert complaint.id == complaint_id
    assert (complaint.full_name, complaint.age, complaint.voter_number, complaint.gender) == ("Ravi", 51, "V-9", "male")
    assert complaint.category == "Water"
    assert len(complaint.media) == 1
    assert complaint.media[0].file_path.endswith(".mp3")
    assert complaint.media[0].file_type == "audio"


async def test_get_missing_complaint_is_not_found(database):
    with pytest.raises(NotFoundError):
        await QueryService(database).get_complaint(42)


async def test_query_store_error_is_store_failure(database, store, pool):
    store.fail_on(db.COUNT_COMPLAINTS_SQL, exc=asyncpg.exceptions.PostgresConnectionError("connection lost"))

    with pytest.raises(StoreFailure) as excinfo:
        await QueryService(database).list_complaints()

    assert "connection lost" in str(excinfo.value.cause)
    assert pool.checked_out == 0


# ==========================================================
# Lifecycle
# ==========================================================
async def test_delete_removes_rows_and_blobs(database, blobs, store):
    complaint_id = await IntakeService(database, blobs).submit(
        metadata(),
        [incoming("photo", "a.jpg", TEST_IMAGE_CONTENT), incoming("audio", "b.mp3", TEST_AUDIO_CONTENT)],
    )
    keys = [m["file_path"] for m in store.tables["complaint_media"].values()]

    result = await LifecycleService(database, blobs).delete(complaint_id)

    assert result.media_removed == 2
    assert result.blobs_removed == 2
    assert result.failed_blobs == []
    assert store.count("complaint_media") == 0
    assert store.count("complaints") == 0
    for key in keys:
        assert not await blobs.exists(key)
    with pytest.raises(NotFoundError):
        await QueryService(database).get_complaint(complaint_id)


async def test_delete_keeps_user_row(database, blobs, store):
    complaint_id = await IntakeService(database, blobs).submit(metadata(full_name="Asha"))

    await LifecycleService(database, blobs).delete(complaint_id)

    assert store.count("users") == 1


async def test_delete_only_touches_target_complaint(database, blobs, store):
    intake = IntakeService(database, blobs)
    keep = await intake.submit(metadata(), [incoming("photo", "keep.jpg", TEST_IMAGE_CONTENT)])
    drop = await intake.submit(metadata(), [incoming("photo", "drop.jpg", TEST_IMAGE_CONTENT)])

    await LifecycleService(database, blobs).delete(drop)

    remaining = await QueryService(database).get_complaint(keep)
    assert len(remaining.media) == 1
    assert await blobs.exists(remaining.media[0].file_path)


async def test_delete_missing_complaint_is_not_found_and_rolls_back(database, blobs, store, pool):
    with pytest.raises(NotFoundError):
        await LifecycleService(database, blobs).delete(999)

    assert store.rollbacks == 1
    assert pool.checked_out == 0


async def test_blob_deletion_failure_does_not_fail_delete(database, blobs, store, monkeypatch):
    complaint_id = await IntakeService(database, blobs).submit(
        metadata(),
        [incoming("photo", f"p{i}.jpg", TEST_IMAGE_CONTENT) for i in range(3)],
    )
    keys = sorted(m["file_path"] for m in store.tables["complaint_media"].values())
    attempted = []
    real_delete = blobs.delete

    async def flaky_delete(key):
        attempted.append(key)
        if key == keys[1]:
            raise PermissionError("read-only filesystem")
        await real_delete(key)

    monkeypatch.setattr(blobs, "delete", flaky_delete)

    result = await LifecycleService(database, blobs).delete(complaint_id)

    assert sorted(attempted) == keys
    assert result.media_removed == 3
    assert result.blobs_removed == 2
    assert result.failed_blobs == [keys[1]]
    assert store.count("complaints") == 0


async def test_delete_store_error_rolls_back(database, blobs, store):
    complaint_id = await IntakeService(database, blobs).submit(
        metadata(), [incoming("photo", "a.jpg", TEST_IMAGE_CONTENT)]
    )
    store.fail_on(db.DELETE_COMPLAINT_SQL, exc=asyncpg.exceptions.DeadlockDetectedError("deadlock"))

    with pytest.raises(StoreFailure, match="Failed to delete complaint"):
        await LifecycleService(database, blobs).delete(complaint_id)

    assert store.count("complaint_media") == 1
    assert store.count("complaints") == 1
    key = next(iter(store.tables["complaint_media"].values()))["file_path"]
    assert await blobs.exists(key)


# ==========================================================
# Pool
# ==========================================================
async def test_requests_queue_for_pooled_connections(store, blobs):
    pool = FakePool(store, max_size=2)
    database = Database(pool=pool)
    intake = IntakeService(database, blobs)

    ids = await asyncio.gather(*(intake.submit(metadata(full_name=f"c{i}")) for i in range(8)))

    assert sorted(ids) == list(range(1, 9))
    assert pool.max_checked_out <= 2
    assert pool.checked_out == 0
