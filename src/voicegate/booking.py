"""
Keypad-driven booking script.

Pressing 1 starts a short data collection flow (name, email, phone, final
confirmation). Each spoken answer is read back and confirmed with the keypad:
4 (or "yes") keeps it, 5 (or "no") asks again. Sessions live in memory per
call sid and are cleared when the call ends.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

NO_SESSION_MESSAGE = "I'm sorry, I don't have an active booking session. Please start over by pressing 1."
CANCELLED_MESSAGE = (
    "Booking cancelled. You can start a new booking anytime by pressing 1. "
    "Is there anything else I can help you with?"
)


class BookingStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class BookingQuestion:
    number: int
    key: str
    prompt: str
    label: str


BOOKING_QUESTIONS: List[BookingQuestion] = [
    BookingQuestion(1, "name", "Could you please tell me your full name?", "name"),
    BookingQuestion(2, "email", "What's your email address?", "email"),
    BookingQuestion(3, "phone", "What's your phone number?", "phone number"),
    BookingQuestion(4, "confirm", "Do you want to confirm this booking? Please say yes or no.", "confirmation"),
]

_CANCEL_PATTERN = re.compile(r"\b(cancel|stop|quit|exit|never mind|forget it)\b", re.IGNORECASE)
_CONFIRM_PATTERN = re.compile(r"\b(yes|correct|right)\b", re.IGNORECASE)
_REJECT_PATTERN = re.compile(r"\b(no|incorrect|wrong)\b", re.IGNORECASE)

_NAME_PATTERN = re.compile(r"^[a-zA-Z\s'\-.]{2,50}$")
_NAME_PREFIX = re.compile(r"^.*?\b(my name is|this is|i am|i'm|it's|it is)\s+", re.IGNORECASE)
_NON_NAMES = {"okay", "ok", "yes", "no", "hello", "hi", "nothing", "none", "good", "fine"}
_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+\s*@\s*[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_SPOKEN_EMAIL_PATTERN = re.compile(r"([\w.]+)\s+at\s+([\w-]+)\s+dot\s+([a-z]{2,})", re.IGNORECASE)
_PHONE_PATTERN = re.compile(r"[\d\s\-()+.]{8,20}")
_YES_PATTERN = re.compile(r"\b(yes|y|yeah|yep|sure|ok|okay|confirm|confirmed|correct|right|proceed)\b", re.IGNORECASE)
_NO_PATTERN = re.compile(r"\b(no|n|nope|nah|wrong|false)\b", re.IGNORECASE)


@dataclass
class BookingSession:
    call_sid: str
    current_question: int = 1
    answers: Dict[str, str] = field(default_factory=dict)
    awaiting_confirmation: bool = False
    pending_answer: Optional[str] = None
    status: BookingStatus = BookingStatus.IN_PROGRESS
    created_at: float = field(default_factory=time.time)

    @property
    def question(self) -> BookingQuestion:
        return BOOKING_QUESTIONS[self.current_question - 1]


def extract_name(text: str) -> Optional[str]:
    candidate = _NAME_PREFIX.sub("", text.strip()).strip().rstrip(".!?,").strip()
    if len(candidate) < 2 or candidate.lower() in _NON_NAMES:
        return None
    if not _NAME_PATTERN.match(candidate):
        return None
    return " ".join(part.capitalize() for part in candidate.split())


def extract_email(text: str) -> Optional[str]:
    match = _EMAIL_PATTERN.search(text)
    if match:
        return re.sub(r"\s", "", match.group(0)).lower()
    spoken = _SPOKEN_EMAIL_PATTERN.search(text)
    if spoken:
        user, domain, tld = spoken.groups()
        return f"{user}@{domain}.{tld}".lower()
    return None


def extract_phone(text: str) -> Optional[str]:
    for match in _PHONE_PATTERN.finditer(text):
        cleaned = re.sub(r"[^\d+]", "", match.group(0))
        if 8 <= len(cleaned.lstrip("+")) <= 15:
            return cleaned
    return None


def extract_confirmation(text: str) -> Optional[str]:
    if _YES_PATTERN.search(text):
        return "Yes"
    if _NO_PATTERN.search(text):
        return "No"
    return None


_EXTRACTORS: Dict[str, Callable[[str], Optional[str]]] = {
    "name": extract_name,
    "email": extract_email,
    "phone": extract_phone,
    "confirm": extract_confirmation,
}

_REPROMPTS: Dict[str, str] = {
    "name": 'I didn\'t catch your name there. Could you please clearly say your first and last name? For example, "John Smith".',
    "email": 'I need your email address. Please try saying it clearly, like "john at gmail dot com".',
    "phone": 'I need your phone number. Please try saying it clearly, like "123 456 7890".',
    "confirm": 'Could you please clearly say "Yes" to confirm or "No" to cancel the booking?',
}


class BookingFlow:
    """In-memory booking sessions keyed by call sid."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._sessions: Dict[str, BookingSession] = {}
        self._clock = clock

    def has_active_session(self, call_sid: str) -> bool:
        session = self._sessions.get(call_sid)
        return session is not None and session.status == BookingStatus.IN_PROGRESS

    def get_session(self, call_sid: str) -> Optional[BookingSession]:
        return self._sessions.get(call_sid)

    def clear_session(self, call_sid: str) -> None:
        if self._sessions.pop(call_sid, None) is not None:
            logger.info("Booking session cleared", call_sid=call_sid)

    def start(self, call_sid: str) -> str:
        """Begin (or restart) a booking and return the opening prompt."""
        self._sessions[call_sid] = BookingSession(call_sid=call_sid, created_at=self._clock())
        logger.info("Booking flow started", call_sid=call_sid, questions=len(BOOKING_QUESTIONS))
        return (
            "Great! I'll help you with your booking. I'll ask you a few questions to collect "
            "your information. Let's start: Could you please tell me your full name?"
        )

    def handle_input(self, call_sid: str, text: str) -> str:
        """
        Feed a spoken answer or a keypad digit ("4"/"5") into the booking.

        Returns the line the assistant should say next.
        """
        session = self._sessions.get(call_sid)
        if session is None or session.status != BookingStatus.IN_PROGRESS:
            logger.warning("No active booking session", call_sid=call_sid)
            return NO_SESSION_MESSAGE

        text = (text or "").strip()

        if session.awaiting_confirmation:
            return self._handle_confirmation(session, text)

        if _CANCEL_PATTERN.search(text):
            return self._cancel(session, reason=text)

        question = session.question
        answer = _EXTRACTORS[question.key](text)
        if not answer:
            logger.info("Booking answer not understood", call_sid=call_sid, question=question.key)
            return _REPROMPTS[question.key]

        session.pending_answer = answer
        session.awaiting_confirmation = True
        logger.info("Booking answer awaiting confirmation", call_sid=call_sid, question=question.key)
        return f'I heard your {question.label} as "{answer}". Is this correct? Press 4 for yes, or press 5 for no.'

    def _handle_confirmation(self, session: BookingSession, text: str) -> str:
        lowered = text.lower()
        question = session.question

        if lowered == "4" or _CONFIRM_PATTERN.search(lowered):
            answer = session.pending_answer or ""
            session.answers[question.key] = answer
            session.awaiting_confirmation = False
            session.pending_answer = None

            if question.key == "confirm" and answer == "No":
                return self._cancel(session, reason="declined at confirmation")

            if session.current_question >= len(BOOKING_QUESTIONS):
                return self._complete(session)

            session.current_question += 1
            logger.info(
                "Booking progressed",
                call_sid=session.call_sid,
                answered=len(session.answers),
                total=len(BOOKING_QUESTIONS),
            )
            return f"Perfect! Thank you. Now, {session.question.prompt}"

        if lowered == "5" or _REJECT_PATTERN.search(lowered):
            session.awaiting_confirmation = False
            session.pending_answer = None
            logger.info("Booking answer rejected", call_sid=session.call_sid, question=question.key)
            return f"No problem! Let me ask that question again. {question.prompt}"

        return (
            f'I need you to confirm your answer. Press 4 if "{session.pending_answer}" is correct, '
            "or press 5 if it's incorrect."
        )

    def _cancel(self, session: BookingSession, reason: str) -> str:
        session.status = BookingStatus.CANCELLED
        logger.info("Booking cancelled", call_sid=session.call_sid, reason=reason)
        return CANCELLED_MESSAGE

    def _complete(self, session: BookingSession) -> str:
        session.status = BookingStatus.COMPLETED
        reference = f"BK-{str(int(self._clock() * 1000))[-6:]}"
        answers = session.answers
        logger.info(
            "Booking completed",
            call_sid=session.call_sid,
            reference=reference,
            duration_s=round(self._clock() - session.created_at, 1),
        )
        return (
            "Excellent! Your booking has been confirmed. "
            f"Your booking reference is {reference}. "
            f"Name: {answers.get('name', 'N/A')}. "
            f"Email: {answers.get('email', 'N/A')}. "
            f"Phone: {answers.get('phone', 'N/A')}. "
            "Is there anything else I can help you with?"
        )
