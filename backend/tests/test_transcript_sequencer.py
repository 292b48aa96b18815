import pytest

from receptionist import db as db_module
from receptionist.services.errors import DuplicateRecord, ValidationError
from receptionist.services.transcript_sequencer import TranscriptSequencer, get_sequencer, normalize_role


class StaleMaxDB(db_module.InMemoryDB):
    """Store whose max() read never sees committed turns, like a lagging replica."""

    def max_sequence_number(self, call_id):
        return 0


class TestTranscriptSequencer:
    def test_numbers_are_distinct_and_ordered(self):
        sequencer = get_sequencer()
        numbers = [sequencer.append_turn("call-1", role, f"line {i}")["sequence_number"]
                   for i, role in enumerate(["user", "assistant", "user", "assistant"])]
        assert numbers == [1, 2, 3, 4]

    def test_calls_are_numbered_independently(self):
        sequencer = get_sequencer()
        sequencer.append_turn("call-a", "user", "hello")
        sequencer.append_turn("call-a", "assistant", "hi there")
        turn = sequencer.append_turn("call-b", "user", "good morning")
        assert turn["sequence_number"] == 1

    def test_replaced_process_continues_sequence(self):
        TranscriptSequencer().append_turn("call-1", "user", "first")
        TranscriptSequencer().append_turn("call-1", "assistant", "second")

        turns = get_sequencer().list_turns("call-1")
        assert [t["sequence_number"] for t in turns] == [1, 2]
        assert [t["text"] for t in turns] == ["first", "second"]

    def test_conflict_is_retried_with_next_number(self, monkeypatch):
        stale = StaleMaxDB()
        monkeypatch.setattr(db_module, "_db_instance", stale)
        process_a, process_b = TranscriptSequencer(), TranscriptSequencer()

        process_a.append_turn("call-1", "user", "from a")
        turn = process_b.append_turn("call-1", "assistant", "from b")

        assert turn["sequence_number"] == 2
        numbers = sorted(t["sequence_number"] for t in stale.transcripts)
        assert numbers == [1, 2]

    def test_gives_up_after_max_attempts(self, monkeypatch):
        class AlwaysConflictDB(db_module.InMemoryDB):
            def insert_transcript_turn(self, row):
                raise DuplicateRecord("taken")

        monkeypatch.setattr(db_module, "_db_instance", AlwaysConflictDB())
        with pytest.raises(DuplicateRecord):
            TranscriptSequencer().append_turn("call-1", "user", "hello")

    def test_failed_write_does_not_consume_number(self, monkeypatch, store):
        calls = {"n": 0}
        original = store.insert_transcript_turn

        def flaky(row):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection reset")
            return original(row)

        monkeypatch.setattr(store, "insert_transcript_turn", flaky)
        sequencer = get_sequencer()
        with pytest.raises(RuntimeError):
            sequencer.append_turn("call-1", "user", "lost")
        assert sequencer.append_turn("call-1", "user", "kept")["sequence_number"] == 1

    def test_empty_text_rejected(self):
        with pytest.raises(ValidationError):
            get_sequencer().append_turn("call-1", "user", "   ")

    def test_release_forgets_hint(self):
        sequencer = get_sequencer()
        sequencer.append_turn("call-1", "user", "hello")
        assert sequencer.tracked_calls() == 1
        sequencer.release("call-1")
        assert sequencer.tracked_calls() == 0


class TestNormalizeRole:
    @pytest.mark.parametrize("raw,expected", [("bot", "assistant"), ("AI", "assistant"), ("customer", "user"), ("user", "user")])
    def test_aliases(self, raw, expected):
        assert normalize_role(raw) == expected

    def test_unknown_role(self):
        with pytest.raises(ValidationError):
            normalize_role("narrator")
