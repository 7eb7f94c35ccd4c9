"""Tests for MonitorDB session and activity storage."""

from datetime import timedelta

import pytest

from agent_monitor.errors import ActivityStateError, NotFoundError, StorageError
from agent_monitor.models import (
    FileOperation,
    FileOperationType,
    Session,
    SessionFilter,
    TaskStatus,
)

from conftest import BASE_TIME


class TestSaveSession:
    def test_round_trip(self, populated_db):
        s1 = populated_db.get_session("s1")
        assert s1.total_tasks == 2
        assert s1.completed_tasks == 1
        assert [a.task_id for a in s1.agents] == ["t1", "t2"]
        assert s1.duration == 600
        assert s1.start_time == BASE_TIME

    def test_upsert_replaces_activities(self, populated_db, make_session, make_activity):
        populated_db.save_session(make_session("s1", [make_activity("t9", "ceo")]))
        s1 = populated_db.get_session("s1")
        assert [a.task_id for a in s1.agents] == ["t9"]
        assert populated_db.get_activity("t1") is None
        assert populated_db.count_sessions() == 3

    def test_file_operations_persist(self, tmp_db, make_session, make_activity):
        activity = make_activity("t1").model_copy(update={"files": [
            FileOperation(operation=FileOperationType.WRITE, path="/a.py", timestamp=BASE_TIME),
        ]})
        tmp_db.save_session(make_session("s", [activity]))
        stored = tmp_db.get_activity("t1")
        assert stored.files[0].operation == FileOperationType.WRITE
        assert stored.files[0].path == "/a.py"

    def test_unknown_session(self, tmp_db):
        assert tmp_db.get_session("nope") is None


class TestGetSessions:
    def test_all_in_start_order(self, populated_db):
        assert [s.session_id for s in populated_db.get_sessions()] == ["s1", "s2", "s3"]

    def test_inclusive_range(self, populated_db):
        filters = SessionFilter(start=BASE_TIME, end=BASE_TIME + timedelta(days=1))
        assert [s.session_id for s in populated_db.get_sessions(filters)] == ["s1", "s2"]

    def test_empty_range_returns_empty(self, populated_db):
        filters = SessionFilter(start=BASE_TIME + timedelta(days=30), end=BASE_TIME + timedelta(days=31))
        assert populated_db.get_sessions(filters) == []

    def test_agent_type_filter(self, populated_db):
        filters = SessionFilter(agent_types={"frontend-developer"})
        assert [s.session_id for s in populated_db.get_sessions(filters)] == ["s1"]

    def test_status_filter(self, populated_db):
        filters = SessionFilter(statuses={TaskStatus.IN_PROGRESS})
        assert [s.session_id for s in populated_db.get_sessions(filters)] == ["s3"]


class TestUpdateSession:
    def test_partial_merge(self, populated_db):
        end = BASE_TIME + timedelta(days=2, hours=1)
        updated = populated_db.update_session(Session(
            session_id="s3", start_time=BASE_TIME + timedelta(days=2), end_time=end,
        ))
        assert updated.end_time == end
        assert updated.working_directory == "/work/app"
        assert [a.task_id for a in updated.agents] == ["t4"]

    def test_unknown_id(self, tmp_db):
        with pytest.raises(NotFoundError):
            tmp_db.update_session(Session(session_id="ghost", start_time=BASE_TIME))

    def test_terminal_activities_not_reopened(self, populated_db, make_activity):
        reopened = make_activity("t1", seconds=None, status=TaskStatus.IN_PROGRESS)
        added = make_activity("t9", seconds=None, status=TaskStatus.IN_PROGRESS)
        updated = populated_db.update_session(Session(
            session_id="s1", start_time=BASE_TIME, agents=[reopened, added],
        ))
        assert populated_db.get_activity("t1").status == TaskStatus.COMPLETED
        assert populated_db.get_activity("t9").status == TaskStatus.IN_PROGRESS
        assert updated.total_tasks == 3
        assert updated.completed_tasks == 1


class TestActivities:
    def test_save_activity_recounts(self, populated_db, make_activity):
        populated_db.save_activity(make_activity("t5"), "s2")
        s2 = populated_db.get_session("s2")
        assert s2.total_tasks == 2
        assert s2.completed_tasks == 2

    def test_save_activity_unknown_session(self, tmp_db, make_activity):
        with pytest.raises(NotFoundError):
            tmp_db.save_activity(make_activity("t1"), "ghost")

    def test_update_activity_merges(self, populated_db):
        updated = populated_db.update_activity("t4", {"input_tokens": 42})
        assert updated.input_tokens == 42
        assert updated.status == TaskStatus.IN_PROGRESS

    def test_completion_derives_duration(self, populated_db):
        start = populated_db.get_activity("t4").start_time
        updated = populated_db.update_activity("t4", {
            "end_time": start + timedelta(seconds=90.7),
            "status": TaskStatus.COMPLETED,
            "success": True,
        })
        assert updated.duration == 90
        assert populated_db.get_session("s3").completed_tasks == 1

    def test_terminal_activity_rejects_updates(self, populated_db):
        with pytest.raises(ActivityStateError):
            populated_db.update_activity("t1", {"input_tokens": 1})

    def test_unknown_activity(self, tmp_db):
        with pytest.raises(NotFoundError):
            tmp_db.update_activity("ghost", {"input_tokens": 1})

    def test_get_activities_by_type(self, populated_db):
        activities = populated_db.get_activities(agent_types={"backend-developer"})
        assert [a.task_id for a in activities] == ["t1", "t3"]


class TestCleanOldData:
    def test_keeps_active_sessions(self, populated_db):
        removed = populated_db.clean_old_data(1, now=BASE_TIME + timedelta(days=60))
        assert removed == 2
        assert [s.session_id for s in populated_db.get_sessions()] == ["s3"]
        assert populated_db.get_activity("t1") is None

    def test_recent_sessions_kept(self, populated_db):
        assert populated_db.clean_old_data(30, now=BASE_TIME + timedelta(days=3)) == 0
        assert populated_db.count_sessions() == 3


class TestBatch:
    def test_writes_committed_when_body_raises(self, tmp_config, make_session):
        from agent_monitor.db import MonitorDB

        db = MonitorDB(tmp_config)
        db.init_db()
        with pytest.raises(RuntimeError):
            with db.batch():
                db.save_session(make_session("kept"))
                raise RuntimeError("boom")
        db.close()

        reopened = MonitorDB(tmp_config)
        reopened.init_db()
        assert reopened.get_session("kept") is not None
        reopened.close()

    def test_failed_write_leaves_no_partial_rows(self, tmp_db, make_session, make_activity):
        # Duplicate task ids violate the activities primary key mid-write
        session = make_session("dup", [make_activity("same"), make_activity("same")])
        with pytest.raises(StorageError):
            tmp_db.save_session(session)
        assert tmp_db.get_session("dup") is None
