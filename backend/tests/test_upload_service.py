"""Tests for the UploadCoordinator."""
import random
import threading

import pytest

from app.uploads.errors import (
    AlreadyFinalized,
    Forbidden,
    IncompleteUpload,
    InvalidUpload,
    OutOfRange,
    SessionNotFound,
    StoreUnavailable,
    Unauthorized,
)
from app.uploads.schemas import UploadStatus
from app.uploads.service import build_object_key

from conftest import MiB


def _initiate(coordinator, owner="alice", total_chunks=3, file_size=12 * MiB, name="movie.mp4"):
    return coordinator.initiate(owner, name, file_size, total_chunks, "video/mp4")


def _ack_all(coordinator, session_id, total, owner="alice", order=None):
    for index in order if order is not None else range(total):
        coordinator.mark_chunk_uploaded(session_id, index, f"etag-{index}", owner)


class TestBuildObjectKey:
    """Tests for object key derivation."""

    def test_owner_timestamp_and_name(self, clock):
        key = build_object_key("alice", "report.pdf", clock())
        assert key == f"alice/{int(clock().timestamp() * 1000)}-report.pdf"

    def test_path_separators_are_replaced(self, clock):
        key = build_object_key("alice", "../../etc\\passwd", clock())
        owner, rest = key.split("/", 1)
        assert owner == "alice"
        assert "/" not in rest
        assert "\\" not in rest

    def test_blank_name_falls_back(self, clock):
        assert build_object_key("alice", "   ", clock()).endswith("-unnamed")


class TestInitiate:
    """Tests for opening an upload session."""

    def test_initiate_creates_session(self, coordinator, object_store, clock):
        resp = _initiate(coordinator)

        session = coordinator.session_store.get(resp.session_id)
        assert session is not None
        assert session.status == UploadStatus.INITIATED
        assert session.owner_id == "alice"
        assert session.total_chunks == 3
        assert session.parts == {}
        assert session.object_key == resp.object_key
        assert resp.object_key.startswith("alice/")
        assert resp.object_key.endswith("-movie.mp4")
        assert resp.lease_expiry == session.lease_expiry
        assert object_store.uploads[resp.session_id]["content_type"] == "video/mp4"

    def test_lease_is_ttl_from_now(self, coordinator, clock):
        resp = _initiate(coordinator)
        assert (resp.lease_expiry - clock()).total_seconds() == 3600

    def test_default_content_type(self, coordinator, object_store):
        resp = coordinator.initiate("alice", "blob.bin", 10, 1)
        assert object_store.uploads[resp.session_id]["content_type"] == "application/octet-stream"

    def test_requires_owner(self, coordinator):
        with pytest.raises(Unauthorized):
            coordinator.initiate(None, "a.txt", 1, 1)

    @pytest.mark.parametrize(
        "name,size,chunks",
        [("", 10, 1), ("a.txt", -1, 1), ("a.txt", 10, 0), ("a.txt", 10, 10_001)],
    )
    def test_rejects_bad_parameters(self, coordinator, object_store, name, size, chunks):
        with pytest.raises(InvalidUpload):
            coordinator.initiate("alice", name, size, chunks)
        assert object_store.uploads == {}

    def test_store_failure_creates_nothing(self, coordinator, object_store):
        object_store.fail_ops.add("create_multipart_upload")
        with pytest.raises(StoreUnavailable):
            _initiate(coordinator)
        assert object_store.uploads == {}


class TestChunkTarget:
    """Tests for presigned chunk targets."""

    def test_part_number_is_index_plus_one(self, coordinator):
        resp = _initiate(coordinator)
        target = coordinator.get_chunk_target(resp.session_id, 2, "alice")
        assert target.part_number == 3
        assert target.method == "PUT"
        assert target.expires_in == 900
        assert "partNumber=3" in target.url

    @pytest.mark.parametrize("index", [-1, 3, 100])
    def test_out_of_range(self, coordinator, index):
        resp = _initiate(coordinator)
        with pytest.raises(OutOfRange):
            coordinator.get_chunk_target(resp.session_id, index, "alice")

    def test_unknown_session(self, coordinator):
        with pytest.raises(SessionNotFound):
            coordinator.get_chunk_target("nope", 0, "alice")

    def test_target_issue_has_no_side_effects(self, coordinator):
        resp = _initiate(coordinator)
        coordinator.get_chunk_target(resp.session_id, 0, "alice")
        coordinator.get_chunk_target(resp.session_id, 0, "alice")
        session = coordinator.session_store.get(resp.session_id)
        assert session.status == UploadStatus.INITIATED
        assert session.parts == {}


class TestMarkChunkUploaded:
    """Tests for chunk acknowledgments."""

    def test_ack_records_part_and_moves_to_in_progress(self, coordinator):
        resp = _initiate(coordinator)
        ack = coordinator.mark_chunk_uploaded(resp.session_id, 1, '"abc123"', "alice")

        assert ack.part_number == 2
        assert ack.uploaded_chunks == 1
        assert ack.total_chunks == 3
        session = coordinator.session_store.get(resp.session_id)
        assert session.status == UploadStatus.IN_PROGRESS
        assert session.parts[1].part_number == 2
        assert session.parts[1].proof_token == "abc123"

    def test_ack_is_idempotent_last_write_wins(self, coordinator):
        resp = _initiate(coordinator)
        coordinator.mark_chunk_uploaded(resp.session_id, 0, "first", "alice")
        ack = coordinator.mark_chunk_uploaded(resp.session_id, 0, "second", "alice")

        assert ack.uploaded_chunks == 1
        session = coordinator.session_store.get(resp.session_id)
        assert len(session.parts) == 1
        assert session.parts[0].proof_token == "second"

    def test_empty_etag_rejected(self, coordinator):
        resp = _initiate(coordinator)
        with pytest.raises(InvalidUpload):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, '""', "alice")

    def test_session_checks_precede_etag_check(self, coordinator):
        with pytest.raises(SessionNotFound):
            coordinator.mark_chunk_uploaded("no-such-upload", 0, "", "alice")

        resp = _initiate(coordinator)
        with pytest.raises(Unauthorized):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "", None)
        with pytest.raises(Forbidden):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "", "mallory")
        with pytest.raises(OutOfRange):
            coordinator.mark_chunk_uploaded(resp.session_id, 7, "", "alice")

        coordinator.session_store.transition(resp.session_id, UploadStatus.CANCELLED)
        with pytest.raises(AlreadyFinalized):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "", "alice")

    def test_out_of_range_ack(self, coordinator):
        resp = _initiate(coordinator)
        with pytest.raises(OutOfRange):
            coordinator.mark_chunk_uploaded(resp.session_id, 3, "etag", "alice")
        assert coordinator.session_store.get(resp.session_id).parts == {}

    def test_concurrent_acks_lose_nothing(self, coordinator):
        total = 50
        resp = _initiate(coordinator, total_chunks=total)

        def ack(index):
            coordinator.mark_chunk_uploaded(resp.session_id, index, f"etag-{index}", "alice")

        threads = [threading.Thread(target=ack, args=(i,)) for i in range(total)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        session = coordinator.session_store.get(resp.session_id)
        assert sorted(session.parts) == list(range(total))
        assert session.missing_chunks() == []


class TestComplete:
    """Tests for finalization."""

    def test_twelve_mib_in_three_chunks_any_ack_order(self, coordinator, object_store, metadata):
        resp = _initiate(coordinator, total_chunks=3, file_size=12 * MiB)
        _ack_all(coordinator, resp.session_id, 3, order=[2, 0, 1])

        result = coordinator.complete(resp.session_id, "alice")

        assert [p["PartNumber"] for p in object_store.completed[resp.object_key]] == [1, 2, 3]
        assert [p["ETag"] for p in object_store.completed[resp.object_key]] == [
            "etag-0", "etag-1", "etag-2",
        ]
        assert result.part_count == 3
        assert result.file.size == 12 * MiB
        assert result.file.name == "movie.mp4"
        assert result.file.type == "video/mp4"
        assert result.file.key == resp.object_key
        assert metadata.get_file(result.file.id) is not None
        assert metadata.get_owner_file_ids("alice") == [result.file.id]

    def test_complete_deletes_session(self, coordinator):
        resp = _initiate(coordinator, total_chunks=1)
        _ack_all(coordinator, resp.session_id, 1)
        coordinator.complete(resp.session_id, "alice")

        assert not coordinator.session_store.exists(resp.session_id)
        with pytest.raises(SessionNotFound):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "etag", "alice")

    def test_file_name_override(self, coordinator):
        resp = _initiate(coordinator, total_chunks=1)
        _ack_all(coordinator, resp.session_id, 1)
        result = coordinator.complete(resp.session_id, "alice", file_name="renamed.mp4")
        assert result.file.name == "renamed.mp4"

    def test_incomplete_upload_keeps_session_usable(self, coordinator, object_store):
        resp = _initiate(coordinator, total_chunks=3)
        _ack_all(coordinator, resp.session_id, 3, order=[0, 2])

        with pytest.raises(IncompleteUpload) as exc_info:
            coordinator.complete(resp.session_id, "alice")
        assert exc_info.value.missing == [1]
        assert object_store.completed == {}

        session = coordinator.session_store.get(resp.session_id)
        assert session.status == UploadStatus.IN_PROGRESS
        coordinator.mark_chunk_uploaded(resp.session_id, 1, "etag-1", "alice")
        result = coordinator.complete(resp.session_id, "alice")
        assert result.part_count == 3

    def test_complete_with_no_acks(self, coordinator):
        resp = _initiate(coordinator, total_chunks=2)
        with pytest.raises(IncompleteUpload) as exc_info:
            coordinator.complete(resp.session_id, "alice")
        assert exc_info.value.missing == [0, 1]

    def test_store_failure_is_retryable(self, coordinator, object_store, metadata):
        resp = _initiate(coordinator, total_chunks=2)
        _ack_all(coordinator, resp.session_id, 2)

        object_store.fail_ops.add("complete_multipart_upload")
        with pytest.raises(StoreUnavailable):
            coordinator.complete(resp.session_id, "alice")
        assert coordinator.session_store.get(resp.session_id).status == UploadStatus.IN_PROGRESS
        assert metadata.get_owner_file_ids("alice") == []

        object_store.fail_ops.clear()
        result = coordinator.complete(resp.session_id, "alice")
        assert metadata.get_owner_file_ids("alice") == [result.file.id]

    def test_metadata_failure_reopens_session_for_retry(self, coordinator, object_store, metadata, monkeypatch):
        resp = _initiate(coordinator, total_chunks=2)
        _ack_all(coordinator, resp.session_id, 2)

        def broken_create(owner_id, attrs):
            raise RuntimeError("metadata database unavailable")

        monkeypatch.setattr(metadata, "create_file_record", broken_create)
        with pytest.raises(RuntimeError):
            coordinator.complete(resp.session_id, "alice")
        session = coordinator.session_store.get(resp.session_id)
        assert session.status == UploadStatus.IN_PROGRESS
        assert sorted(session.parts) == [0, 1]
        assert metadata.get_owner_file_ids("alice") == []

        monkeypatch.undo()
        result = coordinator.complete(resp.session_id, "alice")

        assert result.part_count == 2
        assert result.file.key == resp.object_key
        assert metadata.get_owner_file_ids("alice") == [result.file.id]
        assert not coordinator.session_store.exists(resp.session_id)
        assert [p["PartNumber"] for p in object_store.completed[resp.object_key]] == [1, 2]

    @pytest.mark.parametrize("total", [1, 2, 5, 17, 64])
    def test_parts_assembled_in_index_order_for_shuffled_acks(self, coordinator, object_store, total):
        order = list(range(total))
        random.Random(total).shuffle(order)
        resp = _initiate(coordinator, total_chunks=total, file_size=total * 5 * MiB)
        _ack_all(coordinator, resp.session_id, total, order=order)

        result = coordinator.complete(resp.session_id, "alice")

        completed = object_store.completed[resp.object_key]
        assert [p["PartNumber"] for p in completed] == list(range(1, total + 1))
        assert [p["ETag"] for p in completed] == [f"etag-{i}" for i in range(total)]
        assert result.part_count == total

    def test_lost_race_publishes_nothing(self, coordinator, metadata):
        resp = _initiate(coordinator, total_chunks=1)
        _ack_all(coordinator, resp.session_id, 1)

        # Another worker finalizes between our load and our status update.
        store = coordinator.session_store
        original_transition = store.transition

        def racing_transition(session_id, new_status, expected=None):
            original_transition(session_id, UploadStatus.COMPLETED)
            return original_transition(session_id, new_status, expected)

        store.transition = racing_transition
        with pytest.raises(AlreadyFinalized):
            coordinator.complete(resp.session_id, "alice")
        assert metadata.get_owner_file_ids("alice") == []

    def test_terminal_session_rejected(self, coordinator):
        resp = _initiate(coordinator, total_chunks=1)
        _ack_all(coordinator, resp.session_id, 1)
        coordinator.session_store.transition(resp.session_id, UploadStatus.COMPLETED)

        with pytest.raises(AlreadyFinalized) as exc_info:
            coordinator.complete(resp.session_id, "alice")
        assert isinstance(exc_info.value, SessionNotFound)
        with pytest.raises(AlreadyFinalized):
            coordinator.get_chunk_target(resp.session_id, 0, "alice")
        with pytest.raises(AlreadyFinalized):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "etag", "alice")


class TestCancel:
    """Tests for cancellation."""

    def test_cancel_aborts_and_deletes(self, coordinator, object_store):
        resp = _initiate(coordinator)
        coordinator.mark_chunk_uploaded(resp.session_id, 0, "etag-0", "alice")

        result = coordinator.cancel(resp.session_id, "alice")

        assert result.cancelled is True
        assert resp.session_id in object_store.aborted
        assert not coordinator.session_store.exists(resp.session_id)

    def test_operations_after_cancel_are_not_found(self, coordinator):
        resp = _initiate(coordinator)
        coordinator.cancel(resp.session_id, "alice")

        with pytest.raises(SessionNotFound):
            coordinator.get_chunk_target(resp.session_id, 0, "alice")
        with pytest.raises(SessionNotFound):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "etag", "alice")
        with pytest.raises(SessionNotFound):
            coordinator.complete(resp.session_id, "alice")

    def test_cancel_is_idempotent(self, coordinator):
        resp = _initiate(coordinator)
        assert coordinator.cancel(resp.session_id, "alice").cancelled is True
        assert coordinator.cancel(resp.session_id, "alice").cancelled is False

    def test_cancel_unknown_session_succeeds(self, coordinator):
        assert coordinator.cancel("never-existed", "alice").cancelled is False

    def test_cancel_store_failure_keeps_session_for_retry(self, coordinator, object_store):
        resp = _initiate(coordinator)
        object_store.fail_ops.add("abort_multipart_upload")

        with pytest.raises(StoreUnavailable):
            coordinator.cancel(resp.session_id, "alice")
        assert coordinator.session_store.get(resp.session_id).status == UploadStatus.INITIATED

        object_store.fail_ops.clear()
        assert coordinator.cancel(resp.session_id, "alice").cancelled is True

    def test_cancel_requires_principal(self, coordinator):
        resp = _initiate(coordinator)
        with pytest.raises(Unauthorized):
            coordinator.cancel(resp.session_id, None)


class TestOwnership:
    """A foreign principal is refused on every operation."""

    def test_foreign_principal_forbidden_everywhere(self, coordinator):
        resp = _initiate(coordinator, owner="alice")
        sid = resp.session_id

        with pytest.raises(Forbidden):
            coordinator.get_chunk_target(sid, 0, "mallory")
        with pytest.raises(Forbidden):
            coordinator.mark_chunk_uploaded(sid, 0, "etag", "mallory")
        with pytest.raises(Forbidden):
            coordinator.complete(sid, "mallory")
        with pytest.raises(Forbidden):
            coordinator.cancel(sid, "mallory")
        with pytest.raises(Forbidden):
            coordinator.get_status(sid, "mallory")

        assert coordinator.session_store.get(sid).parts == {}

    def test_missing_principal_unauthorized(self, coordinator):
        resp = _initiate(coordinator)
        with pytest.raises(Unauthorized):
            coordinator.get_chunk_target(resp.session_id, 0, None)
        with pytest.raises(Unauthorized):
            coordinator.mark_chunk_uploaded(resp.session_id, 0, "etag", "")


class TestLeaseExpiry:
    """An expired session behaves as absent."""

    def test_expired_session_not_found_everywhere(self, coordinator, clock):
        resp = _initiate(coordinator)
        coordinator.mark_chunk_uploaded(resp.session_id, 0, "etag-0", "alice")
        clock.advance(3600)

        with pytest.raises(SessionNotFound):
            coordinator.get_chunk_target(resp.session_id, 1, "alice")
        with pytest.raises(SessionNotFound):
            coordinator.mark_chunk_uploaded(resp.session_id, 1, "etag-1", "alice")
        with pytest.raises(SessionNotFound):
            coordinator.complete(resp.session_id, "alice")
        with pytest.raises(SessionNotFound):
            coordinator.get_status(resp.session_id, "alice")

    def test_cancel_of_expired_session_cleans_up(self, coordinator, object_store, clock):
        resp = _initiate(coordinator)
        clock.advance(3601)

        result = coordinator.cancel(resp.session_id, "alice")

        assert result.cancelled is False
        assert resp.session_id in object_store.aborted
        assert not coordinator.session_store.exists(resp.session_id)

    def test_session_usable_just_before_expiry(self, coordinator, clock):
        resp = _initiate(coordinator)
        clock.advance(3599)
        assert coordinator.get_chunk_target(resp.session_id, 0, "alice").part_number == 1


class TestStatus:
    """Tests for the status query used to resume uploads."""

    def test_status_lists_uploaded_and_missing(self, coordinator):
        resp = _initiate(coordinator, total_chunks=4)
        _ack_all(coordinator, resp.session_id, 4, order=[3, 1])

        status = coordinator.get_status(resp.session_id, "alice")

        assert status.status == UploadStatus.IN_PROGRESS
        assert status.uploaded_chunks == [1, 3]
        assert status.missing_chunks == [0, 2]
        assert status.total_chunks == 4
        assert status.object_key == resp.object_key

    def test_status_reports_terminal_sessions(self, coordinator):
        resp = _initiate(coordinator, total_chunks=1)
        coordinator.session_store.transition(resp.session_id, UploadStatus.CANCELLED)
        assert coordinator.get_status(resp.session_id, "alice").status == UploadStatus.CANCELLED
