# =============================================================================
# Unit Tests — Job Store & State Machine
# =============================================================================
#
# Runs the guarded (compare-and-set) writes against in-memory SQLite.
# No PostgreSQL, Redis or network needed.
# =============================================================================

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from app.db.models import JobStatus, UploadJob
from app.services import job_store
from app.services.job_store import InvalidTransitionError, JobNotFoundError


def _stale_cutoff(minutes: int = 15) -> datetime:
    return datetime.now(UTC) - timedelta(minutes=minutes)


def _create(session, file_info, user_id="u1") -> str:
    job = job_store.create_job(session, user_id, file_info, b"%PDF-1.4 data")
    session.commit()
    return job.id


def _force(session, job_id, **values) -> None:
    """Write fields directly, bypassing the state machine (test setup only)."""
    session.execute(update(UploadJob).where(UploadJob.id == job_id).values(**values))
    session.commit()


class TestStateMachine:
    """Tests for the transition table."""

    @pytest.mark.parametrize(
        ("src", "dst"),
        [
            (JobStatus.PENDING, JobStatus.PROCESSING),
            (JobStatus.PENDING, JobStatus.CANCELLED),
            (JobStatus.PROCESSING, JobStatus.COMPLETED),
            (JobStatus.PROCESSING, JobStatus.FAILED),
            (JobStatus.PROCESSING, JobStatus.CANCELLED),
        ],
    )
    def test_allowed_transitions(self, src, dst):
        assert job_store.can_transition(src, dst)

    @pytest.mark.parametrize(
        ("src", "dst"),
        [
            (JobStatus.PENDING, JobStatus.COMPLETED),
            (JobStatus.PENDING, JobStatus.FAILED),
            (JobStatus.COMPLETED, JobStatus.PROCESSING),
            (JobStatus.FAILED, JobStatus.PROCESSING),
            (JobStatus.CANCELLED, JobStatus.PENDING),
            (JobStatus.COMPLETED, JobStatus.CANCELLED),
        ],
    )
    def test_forbidden_transitions(self, src, dst):
        assert not job_store.can_transition(src, dst)

    def test_terminal_states_have_no_exits(self):
        for status in JobStatus:
            if status.is_terminal:
                assert job_store.ALLOWED_TRANSITIONS[status] == frozenset()


class TestCreateAndGet:
    """Tests for create_job(), get_job(), load_payload()."""

    def test_new_job_is_pending_with_zero_progress(self, session, file_info):
        job_id = _create(session, file_info)
        job = job_store.get_job(session, job_id)
        assert job.status == JobStatus.PENDING
        assert job.progress == 0
        assert job.retry_count == 0
        assert job.file_info["file_name"] == "cv.pdf"
        assert job.result is None
        assert job.error is None

    def test_payload_round_trips(self, session, file_info):
        job_id = _create(session, file_info)
        assert job_store.load_payload(session, job_id) == b"%PDF-1.4 data"

    def test_unknown_job_raises(self, session):
        with pytest.raises(JobNotFoundError):
            job_store.get_job(session, "does-not-exist")

    def test_get_scoped_to_owner(self, session, file_info):
        job_id = _create(session, file_info, user_id="u1")
        assert job_store.get_job(session, job_id, user_id="u1").id == job_id
        with pytest.raises(JobNotFoundError):
            job_store.get_job(session, job_id, user_id="someone-else")

    def test_list_active_excludes_terminal_and_other_users(self, session, file_info):
        active = _create(session, file_info, user_id="u1")
        done = _create(session, file_info, user_id="u1")
        _create(session, file_info, user_id="u2")
        _force(session, done, status=JobStatus.COMPLETED)

        ids = [j.id for j in job_store.list_active_jobs(session, "u1")]
        assert ids == [active]


class TestGuardedWrites:
    """Tests for update_job() and transition()."""

    def test_update_job_applies_partial_fields(self, session, file_info):
        job_id = _create(session, file_info)
        job = job_store.update_job(session, job_id, progress=5)
        assert job.progress == 5
        assert job.status == JobStatus.PENDING

    def test_update_job_rejects_illegal_status(self, session, file_info):
        job_id = _create(session, file_info)
        with pytest.raises(ValueError):
            job_store.update_job(
                session, job_id, expected=[JobStatus.PENDING], status=JobStatus.COMPLETED,
            )

    def test_update_job_on_terminal_job_raises(self, session, file_info):
        job_id = _create(session, file_info)
        _force(session, job_id, status=JobStatus.CANCELLED)
        with pytest.raises(InvalidTransitionError) as exc_info:
            job_store.update_job(session, job_id, progress=50)
        assert exc_info.value.current == JobStatus.CANCELLED

    def test_update_unknown_job_raises_not_found(self, session):
        with pytest.raises(JobNotFoundError):
            job_store.update_job(session, "missing", progress=1)

    def test_transition_never_leaves_terminal_state(self, session, file_info):
        job_id = _create(session, file_info)
        _force(session, job_id, status=JobStatus.COMPLETED)
        assert job_store.transition(session, job_id, JobStatus.CANCELLED) is False
        assert job_store.get_job(session, job_id).status == JobStatus.COMPLETED


class TestCancellation:
    """Tests for cancel_job() and cancel_active_jobs()."""

    def test_cancel_pending_job(self, session, file_info):
        job_id = _create(session, file_info)
        assert job_store.cancel_job(session, job_id, "Cancelled due to new CV upload")
        session.commit()

        job = job_store.get_job(session, job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.error == {"message": "Cancelled due to new CV upload"}
        assert job.completed_at is not None
        assert job.result is None

    def test_cancel_does_not_clobber_completed_job(self, session, file_info):
        job_id = _create(session, file_info)
        _force(session, job_id, status=JobStatus.COMPLETED, result={"ids": ["a"]})

        assert job_store.cancel_job(session, job_id, "late") is False
        job = job_store.get_job(session, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"ids": ["a"]}

    def test_cancel_active_jobs_returns_only_cancelled(self, session, file_info):
        pending = _create(session, file_info)
        processing = _create(session, file_info)
        done = _create(session, file_info)
        _force(session, processing, status=JobStatus.PROCESSING)
        _force(session, done, status=JobStatus.FAILED)

        cancelled = job_store.cancel_active_jobs(session, "u1", "new upload")
        assert sorted(cancelled) == sorted([pending, processing])
        session.commit()
        assert job_store.list_active_jobs(session, "u1") == []
        assert job_store.get_job(session, done).status == JobStatus.FAILED


class TestClaim:
    """Tests for claim_job() — the worker's ownership write."""

    def test_claim_pending_job(self, session, file_info):
        job_id = _create(session, file_info)
        job = job_store.claim_job(session, job_id, _stale_cutoff())
        assert job is not None
        assert job.status == JobStatus.PROCESSING
        assert job.started_at is not None
        assert job.heartbeat_at is not None
        assert job.retry_count == 0

    def test_claim_with_live_heartbeat_is_refused(self, session, file_info):
        job_id = _create(session, file_info)
        assert job_store.claim_job(session, job_id, _stale_cutoff())
        session.commit()
        assert job_store.claim_job(session, job_id, _stale_cutoff()) is None

    def test_released_job_is_reclaimed_and_counts_a_retry(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        assert job_store.release_job(session, job_id)
        session.commit()

        job = job_store.claim_job(session, job_id, _stale_cutoff())
        assert job is not None
        assert job.retry_count == 1

    def test_stale_heartbeat_is_reclaimed(self, session, file_info):
        job_id = _create(session, file_info)
        _force(
            session, job_id,
            status=JobStatus.PROCESSING,
            heartbeat_at=datetime.now(UTC) - timedelta(hours=1),
        )
        job = job_store.claim_job(session, job_id, _stale_cutoff())
        assert job is not None
        assert job.retry_count == 1

    def test_terminal_job_cannot_be_claimed(self, session, file_info):
        job_id = _create(session, file_info)
        _force(session, job_id, status=JobStatus.CANCELLED)
        assert job_store.claim_job(session, job_id, _stale_cutoff()) is None


class TestCheckpoint:
    """Tests for checkpoint() — monotonic progress and cancellation signal."""

    def test_progress_only_moves_forward(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())

        assert job_store.checkpoint(session, job_id, 50)
        # A retry run reporting an earlier stage keeps the higher value
        assert job_store.checkpoint(session, job_id, 10)
        session.commit()
        assert job_store.get_job(session, job_id).progress == 50

    def test_checkpoint_reports_cancellation(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        job_store.checkpoint(session, job_id, 40)
        job_store.cancel_job(session, job_id, "superseded")
        session.commit()

        assert job_store.checkpoint(session, job_id, 70) is False
        # Frozen at the last value written while processing
        assert job_store.get_job(session, job_id).progress == 40

    def test_touch_heartbeat_while_processing(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        _force(session, job_id, heartbeat_at=None)

        assert job_store.touch_heartbeat(session, job_id)
        session.commit()
        assert job_store.get_job(session, job_id).heartbeat_at is not None

    def test_touch_heartbeat_stops_after_cancel(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        job_store.cancel_job(session, job_id, "superseded")
        session.commit()

        assert job_store.touch_heartbeat(session, job_id) is False
        assert job_store.is_processing(session, job_id) is False

    def test_is_processing_unknown_job(self, session):
        with pytest.raises(JobNotFoundError):
            job_store.is_processing(session, "missing")


class TestTerminalWrites:
    """Tests for complete_job() and fail_job()."""

    def test_complete_sets_result_and_progress(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        assert job_store.complete_job(session, job_id, {"ids": ["x"], "total_chunks": 1})
        session.commit()

        job = job_store.get_job(session, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.result["ids"] == ["x"]
        assert job.completed_at is not None
        assert job.heartbeat_at is None

    def test_complete_after_cancel_is_refused(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        job_store.cancel_job(session, job_id, "superseded")
        assert job_store.complete_job(session, job_id, {"ids": []}) is False
        assert job_store.get_job(session, job_id).status == JobStatus.CANCELLED

    def test_fail_records_message_and_trace(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        assert job_store.fail_job(session, job_id, "boom", trace="Traceback ...")
        session.commit()

        job = job_store.get_job(session, job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == {"message": "boom", "trace": "Traceback ..."}

    def test_pending_job_cannot_fail(self, session, file_info):
        job_id = _create(session, file_info)
        assert job_store.fail_job(session, job_id, "boom") is False

    def test_fail_with_stale_guard_skips_live_job(self, session, file_info):
        job_id = _create(session, file_info)
        job_store.claim_job(session, job_id, _stale_cutoff())
        assert job_store.fail_job(session, job_id, "lost", stale_before=_stale_cutoff()) is False


class TestStaleJobs:
    """Tests for find_stale_jobs() and requeue_stale_job()."""

    def test_finds_processing_job_with_old_heartbeat(self, session, file_info):
        old = datetime.now(UTC) - timedelta(hours=2)
        stale = _create(session, file_info)
        live = _create(session, file_info)
        _force(session, stale, status=JobStatus.PROCESSING, heartbeat_at=old, updated_at=old)
        job_store.claim_job(session, live, _stale_cutoff())
        session.commit()

        ids = [j.id for j in job_store.find_stale_jobs(session, _stale_cutoff())]
        assert ids == [stale]

    def test_finds_forgotten_pending_job(self, session, file_info):
        old = datetime.now(UTC) - timedelta(hours=2)
        job_id = _create(session, file_info)
        _force(session, job_id, updated_at=old)
        ids = [j.id for j in job_store.find_stale_jobs(session, _stale_cutoff())]
        assert ids == [job_id]

    def test_requeue_makes_job_fresh_and_claimable(self, session, file_info):
        old = datetime.now(UTC) - timedelta(hours=2)
        job_id = _create(session, file_info)
        _force(session, job_id, status=JobStatus.PROCESSING, heartbeat_at=old, updated_at=old)

        assert job_store.requeue_stale_job(session, job_id, _stale_cutoff())
        session.commit()
        assert job_store.find_stale_jobs(session, _stale_cutoff()) == []
        assert job_store.claim_job(session, job_id, _stale_cutoff()) is not None
