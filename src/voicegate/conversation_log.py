"""
Per-call conversation record.

Every recognized utterance and the line spoken back are appended to the call's
session. When the call ends the session is summarized in the log and, when a
log directory is configured, written out as `<call_sid>.json`.
"""

import asyncio
import os
import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Call sids allowed as log file names.
SAFE_CALL_SID = re.compile(r"[A-Za-z0-9_-]{1,64}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConversationInteraction:
    question: str
    answer: str = ""
    source: str = "llm"
    error: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)


@dataclass
class ConversationRecord:
    call_sid: str
    assistant_type: str
    phone_number: Optional[str] = None
    start_time: str = field(default_factory=_now_iso)
    started_at: float = field(default_factory=time.monotonic)
    interactions: List[ConversationInteraction] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "assistant_type": self.assistant_type,
            "phone_number": self.phone_number,
            "start_time": self.start_time,
            "end_time": _now_iso(),
            "duration_s": round(time.monotonic() - self.started_at, 2),
            "total_interactions": len(self.interactions),
            "error_count": sum(1 for i in self.interactions if i.error),
        }


class ConversationLog:
    def __init__(self, log_directory: str = ""):
        self.log_directory = log_directory
        self._sessions: Dict[str, ConversationRecord] = {}

    def start_session(self, call_sid: str, assistant_type: str, phone_number: Optional[str] = None) -> ConversationRecord:
        record = self._sessions.get(call_sid)
        if record is None:
            record = ConversationRecord(call_sid=call_sid, assistant_type=assistant_type, phone_number=phone_number)
            self._sessions[call_sid] = record
        return record

    def get_session(self, call_sid: str) -> Optional[ConversationRecord]:
        return self._sessions.get(call_sid)

    def add_interaction(
        self,
        call_sid: str,
        question: str,
        answer: str = "",
        source: str = "llm",
        error: Optional[str] = None,
    ) -> None:
        record = self._sessions.get(call_sid)
        if record is None:
            logger.debug("Interaction for unknown conversation", call_sid=call_sid)
            return
        record.interactions.append(
            ConversationInteraction(question=question, answer=answer, source=source, error=error)
        )

    async def end_session(self, call_sid: str) -> Optional[Dict[str, Any]]:
        record = self._sessions.pop(call_sid, None)
        if record is None:
            return None

        summary = record.summary()
        logger.info("Conversation ended", **summary)

        if self.log_directory and not SAFE_CALL_SID.fullmatch(call_sid):
            logger.warning("Not writing conversation log for unsafe call sid", call_sid=call_sid)
        elif self.log_directory:
            try:
                await asyncio.to_thread(self._write, record, summary)
            except OSError as e:
                logger.error("Failed to write conversation log", call_sid=call_sid, error=str(e))
        return summary

    def _write(self, record: ConversationRecord, summary: Dict[str, Any]) -> None:
        os.makedirs(self.log_directory, exist_ok=True)
        payload = {
            **summary,
            "interactions": [asdict(i) for i in record.interactions],
        }
        path = os.path.join(self.log_directory, f"{record.call_sid}.json")
        with open(path, "wb") as f:
            f.write(msgspec.json.format(msgspec.json.encode(payload), indent=2))
