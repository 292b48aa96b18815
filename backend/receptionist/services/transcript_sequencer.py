"""Gap-free, collision-free ordering of conversation turns per call.

Sequence numbers are assigned here in receipt order, never by the caller.
The next number is derived from the highest number already stored for the
call, so a replaced process continues the sequence instead of restarting it.
The unique ``(call_id, sequence_number)`` constraint settles races between
concurrent writers: the loser re-reads and takes the next free number.
"""
import logging
from typing import Any, Dict, List, Optional

from ..db import get_db
from .clock import isoformat, utcnow
from .errors import DuplicateRecord, ValidationError

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")
ROLE_ALIASES = {"bot": "assistant", "ai": "assistant", "customer": "user", "caller": "user"}
MAX_ATTEMPTS = 5


def normalize_role(role: Optional[str]) -> str:
    value = (role or "").strip().lower()
    value = ROLE_ALIASES.get(value, value)
    if value not in ROLES:
        raise ValidationError(f"Unsupported transcript role {role!r}")
    return value


class TranscriptSequencer:
    def __init__(self) -> None:
        # Highest number this process has stored per call; a hint, never authoritative
        self._last_assigned: Dict[str, int] = {}

    def _next_number(self, db, call_id: str) -> int:
        return max(db.max_sequence_number(call_id), self._last_assigned.get(call_id, 0)) + 1

    def append_turn(
        self,
        call_id: str,
        role: str,
        text: str,
        spoken_at: Any = None,
        confidence: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not call_id:
            raise ValidationError("call_id is required")
        if not text or not text.strip():
            raise ValidationError("Transcript text is empty")
        role = normalize_role(role)
        db = get_db()
        row = {
            "call_id": call_id,
            "role": role,
            "text": text.strip(),
            "spoken_at": isoformat(spoken_at) or utcnow().isoformat(),
            "confidence": confidence,
        }
        for attempt in range(1, MAX_ATTEMPTS + 1):
            row["sequence_number"] = self._next_number(db, call_id)
            try:
                turn = db.insert_transcript_turn(dict(row))
            except DuplicateRecord:
                logger.info(f"Sequence {row['sequence_number']} taken for call {call_id} (attempt {attempt}); retrying")
                self._last_assigned[call_id] = max(self._last_assigned.get(call_id, 0), row["sequence_number"])
                continue
            self._last_assigned[call_id] = max(self._last_assigned.get(call_id, 0), turn["sequence_number"])
            return turn
        raise DuplicateRecord(f"Could not allocate a sequence number for call {call_id}")

    def list_turns(self, call_id: str) -> List[Dict[str, Any]]:
        return get_db().list_transcript_turns(call_id)

    def release(self, call_id: str) -> None:
        self._last_assigned.pop(call_id, None)

    def tracked_calls(self) -> int:
        return len(self._last_assigned)


_sequencer: Optional[TranscriptSequencer] = None


def get_sequencer() -> TranscriptSequencer:
    global _sequencer
    if _sequencer is None:
        _sequencer = TranscriptSequencer()
    return _sequencer
