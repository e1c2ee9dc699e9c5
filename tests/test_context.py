"""Tests for the memory store."""

import pytest

from sessionmem.context.models import NoteSource, ObservationStatus, SessionStatus
from sessionmem.context.store import MemoryStore, build_search_query
from sessionmem.errors import NotFoundError, StorageUnavailableError, ValidationError


@pytest.fixture
def store(tmp_path):
    """Create a MemoryStore with a temp database."""
    s = MemoryStore(db_path=tmp_path / "test.db")
    yield s
    s.close()


class TestSessions:
    def test_create_and_get(self, store):
        created = store.create_session("/home/user/myproject", "Add user authentication")
        assert created.id.startswith("sess_")

        retrieved = store.get_session(created.id)
        assert retrieved is not None
        assert retrieved.project_path == "/home/user/myproject"
        assert retrieved.user_prompt == "Add user authentication"
        assert retrieved.status is SessionStatus.ACTIVE
        assert retrieved.total_observations == 0
        assert retrieved.tokens_saved == 0
        assert retrieved.ended_at is None

    def test_get_nonexistent(self, store):
        assert store.get_session("nonexistent") is None

    def test_ids_are_unique(self, store):
        ids = {store.create_session("/proj").id for _ in range(20)}
        assert len(ids) == 20

    def test_end_session_sets_summary_and_status(self, store):
        session = store.create_session("/proj", "Refactor routes")
        assert store.end_session(session.id, "Moved routes into blueprints")

        ended = store.get_session(session.id)
        assert ended.summary == "Moved routes into blueprints"
        assert ended.status is SessionStatus.SUMMARIZED
        assert ended.ended_at is not None

    def test_end_session_keeps_existing_summary(self, store):
        session = store.create_session("/proj")
        store.end_session(session.id, "First summary")
        store.end_session(session.id, status=SessionStatus.COMPLETED)

        ended = store.get_session(session.id)
        assert ended.summary == "First summary"
        assert ended.status is SessionStatus.COMPLETED

    def test_end_session_last_write_wins(self, store):
        session = store.create_session("/proj")
        store.end_session(session.id, "one")
        store.end_session(session.id, "two")
        assert store.get_session(session.id).summary == "two"

    def test_end_session_unknown_id(self, store):
        assert store.end_session("sess_missing", "summary") is False

    def test_end_session_rejects_active(self, store):
        session = store.create_session("/proj")
        with pytest.raises(ValidationError):
            store.end_session(session.id, status="active")
        with pytest.raises(ValidationError):
            store.end_session(session.id, status="archived")

    def test_recent_sessions_exclude_active(self, store):
        done = []
        for i in range(3):
            s = store.create_session("/proj", f"Task {i}")
            store.end_session(s.id, f"Did task {i}")
            done.append(s.id)
        store.create_session("/proj", "Still running")
        other = store.create_session("/other")
        store.end_session(other.id, "Elsewhere")

        recent = store.get_recent_sessions("/proj", limit=5)
        assert [s.id for s in recent] == list(reversed(done))

    def test_recent_sessions_limit(self, store):
        for i in range(4):
            s = store.create_session("/proj")
            store.end_session(s.id, f"summary {i}")
        assert len(store.get_recent_sessions("/proj", limit=2)) == 2

    def test_delete_session_cascades(self, store):
        session = store.create_session("/proj")
        obs = store.save_observation(session.id, "write_file", {"path": "a.py"})
        note = store.save_note(session.id, annotation="keep")

        assert store.delete_session(session.id)
        assert store.get_session(session.id) is None
        assert store.get_observation(obs.id) is None
        assert store.get_note(note.id) is None
        assert not store.delete_session("nonexistent")


class TestObservations:
    def test_counter_matches_saved_observations(self, store):
        session = store.create_session("/proj")
        for i in range(7):
            store.save_observation(session.id, "edit_file", {"n": i})
        assert store.get_session(session.id).total_observations == 7
        assert len(store.get_observations_for_session(session.id)) == 7

    def test_save_observation_unknown_session(self, store):
        with pytest.raises(NotFoundError):
            store.save_observation("sess_missing", "write_file")
        count = store._get_conn().execute("SELECT COUNT(*) FROM observations").fetchone()[0]
        assert count == 0

    def test_observation_lifecycle(self, store):
        session = store.create_session("/proj")
        obs = store.save_observation(session.id, "write_file", {"path": "a.ts"}, "file_write")
        assert obs.status is ObservationStatus.PENDING
        assert obs.function_args == '{"path": "a.ts"}'

        assert store.update_observation_result(obs.id, {"ok": True})
        captured = store.get_observation(obs.id)
        assert captured.status is ObservationStatus.CAPTURED
        assert captured.function_result == '{"ok": true}'
        assert captured.observation_type == "file_write"
        assert captured.compressed_data is None

    def test_update_result_unknown_id(self, store):
        assert store.update_observation_result("obs_missing", {"ok": True}) is False

    def test_mark_compressed(self, store):
        session = store.create_session("/p", "fix bug")
        obs = store.save_observation(session.id, "write_file", {"path": "a.ts"})
        store.update_observation_result(obs.id, {"ok": True})

        assert store.mark_observation_compressed(obs.id, "Fixed a.ts bug", 100, 20)
        compressed = store.get_observation(obs.id)
        assert compressed.status is ObservationStatus.COMPRESSED
        assert compressed.compressed_data == "Fixed a.ts bug"
        assert compressed.original_tokens == 100
        assert compressed.compressed_tokens == 20
        assert compressed.tokens_saved == 80
        assert store.get_session(session.id).tokens_saved == 80

    def test_mark_compressed_never_negative(self, store):
        session = store.create_session("/proj")
        obs = store.save_observation(session.id, "read_file")
        store.mark_observation_compressed(obs.id, "a longer text than the input", 5, 12)
        assert store.get_observation(obs.id).tokens_saved == 0
        assert store.get_session(session.id).tokens_saved == 0

    def test_mark_compressed_is_idempotent(self, store):
        session = store.create_session("/proj")
        obs = store.save_observation(session.id, "write_file")
        store.mark_observation_compressed(obs.id, "summary", 50, 10)
        first = store.get_observation(obs.id)
        store.mark_observation_compressed(obs.id, "summary", 50, 10)
        second = store.get_observation(obs.id)

        assert first == second
        assert store.get_session(session.id).tokens_saved == 40

    def test_session_tokens_saved_sums_observations(self, store):
        session = store.create_session("/proj")
        a = store.save_observation(session.id, "one")
        b = store.save_observation(session.id, "two")
        store.mark_observation_compressed(a.id, "x", 30, 10)
        store.mark_observation_compressed(b.id, "y", 15, 5)
        store.mark_observation_compressed(a.id, "x2", 30, 20)
        assert store.get_session(session.id).tokens_saved == 20

    def test_mark_compressed_unknown_id(self, store):
        assert store.mark_observation_compressed("obs_missing", "x", 10, 1) is False

    def test_mark_failed_does_not_touch_compressed(self, store):
        session = store.create_session("/proj")
        pending = store.save_observation(session.id, "one")
        done = store.save_observation(session.id, "two")
        store.mark_observation_compressed(done.id, "x", 10, 1)

        assert store.mark_observation_failed(pending.id)
        assert not store.mark_observation_failed(done.id)
        assert store.get_observation(pending.id).status is ObservationStatus.FAILED
        assert store.get_observation(done.id).status is ObservationStatus.COMPRESSED

    def test_result_does_not_regress_compressed(self, store):
        session = store.create_session("/proj")
        obs = store.save_observation(session.id, "one")
        store.mark_observation_compressed(obs.id, "x", 10, 1)
        store.update_observation_result(obs.id, "late result")
        assert store.get_observation(obs.id).status is ObservationStatus.COMPRESSED

    def test_observations_ordered_oldest_first(self, store):
        session = store.create_session("/proj")
        names = [f"step_{i}" for i in range(5)]
        for name in names:
            store.save_observation(session.id, name)
        assert [o.function_name for o in store.get_observations_for_session(session.id)] == names


class TestNotes:
    def test_save_and_list_notes(self, store):
        session = store.create_session("/proj")
        store.save_note(session.id, user_prompt="Add login", ai_response="Created auth.py")
        store.save_note(session.id, annotation="Chose JWT", source="clipboard")

        notes = store.get_notes_for_session(session.id)
        assert [n.ai_response for n in notes] == ["Created auth.py", None]
        assert notes[1].annotation == "Chose JWT"
        assert notes[1].source is NoteSource.CLIPBOARD

    def test_save_note_unknown_session(self, store):
        with pytest.raises(NotFoundError):
            store.save_note("sess_missing", annotation="orphan")

    def test_notes_do_not_bump_counter(self, store):
        session = store.create_session("/proj")
        store.save_note(session.id, annotation="just a note")
        assert store.get_session(session.id).total_observations == 0


class TestSearch:
    def test_build_search_query(self):
        assert build_search_query("Fix the login-page bug, please!") == "loginpage OR please"

    def test_build_search_query_caps_keywords(self):
        query = build_search_query("alpha bravo charlie delta echoes foxtrot golf")
        assert query == "alpha OR bravo OR charlie OR delta OR echoes"

    def test_build_search_query_short_words(self):
        assert build_search_query("fix a bug in the app") == ""
        assert build_search_query("") == ""

    def test_search_matches_prompt(self, store):
        session = store.create_session("/proj", "Implement authentication middleware")
        store.create_session("/proj", "Fix flexbox layout")

        results = store.search_sessions("/proj", "add authentication please", limit=5)
        assert [s.id for s in results] == [session.id]

    def test_search_matches_summary_written_later(self, store):
        session = store.create_session("/proj", "misc work")
        store.end_session(session.id, "Migrated the database from MySQL to PostgreSQL")

        results = store.search_sessions("/proj", "postgresql migration")
        assert [s.id for s in results] == [session.id]

    def test_search_scoped_to_project(self, store):
        store.create_session("/proj1", "Upgrade webpack configuration")
        other = store.create_session("/proj2", "Upgrade webpack configuration")

        results = store.search_sessions("/proj2", "webpack")
        assert [s.id for s in results] == [other.id]

    def test_search_short_words_returns_empty(self, store):
        store.create_session("/proj", "fix bug")
        assert store.search_sessions("/proj", "fix a bug") == []

    def test_search_after_delete(self, store):
        session = store.create_session("/proj", "Remove deprecated endpoints")
        store.delete_session(session.id)
        assert store.search_sessions("/proj", "deprecated endpoints") == []


class TestStats:
    def test_empty_stats(self, store):
        stats = store.get_stats("/proj")
        assert stats.total_sessions == 0
        assert stats.average_compression_ratio == 0.0

    def test_stats_for_project(self, store):
        session = store.create_session("/proj")
        a = store.save_observation(session.id, "one")
        store.save_observation(session.id, "two")
        store.mark_observation_compressed(a.id, "x", 100, 20)
        other = store.create_session("/other")
        b = store.save_observation(other.id, "three")
        store.mark_observation_compressed(b.id, "y", 10, 5)

        stats = store.get_stats("/proj")
        assert stats.total_sessions == 1
        assert stats.total_observations == 2
        assert stats.compressed_observations == 1
        assert stats.original_tokens == 100
        assert stats.total_tokens_saved == 80
        assert stats.average_compression_ratio == 80.0

        overall = store.get_stats()
        assert overall.total_sessions == 2
        assert overall.compressed_observations == 2
        assert overall.total_tokens_saved == 85


class TestStorage:
    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = MemoryStore(db_path=blocker / "memory.db")
        with pytest.raises(StorageUnavailableError):
            store.open()

    def test_context_manager_closes(self, tmp_path):
        with MemoryStore(db_path=tmp_path / "cm.db") as store:
            store.create_session("/proj")
        assert store._conn is None
