import re
import uuid
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Tuple

logger = logging.getLogger("profile_chat")


# -----------------------------
# Slot definitions
# -----------------------------
INDUSTRY_KEYWORDS = (
    "tecnología",
    "salud",
    "educación",
    "finanzas",
    "retail",
    "manufactura",
    "servicios",
    "construcción",
    "agricultura",
    "turismo",
    "entretenimiento",
    "logística",
    "consultoría",
)

ROLE_KEYWORDS = (
    "desarrollador",
    "gerente",
    "analista",
    "director",
    "coordinador",
    "especialista",
    "consultor",
    "ingeniero",
    "diseñador",
    "vendedor",
    "administrador",
)

# Whole reply taken as the company name when nothing explicit was said.
COMPANY_FALLBACK_RE = re.compile(r"[\w\s.,;:&'\"()/+¡!¿?\-]+")
COMPANY_FALLBACK_MIN_LEN = 3


def _keyword_pattern(words: Tuple[str, ...]) -> Pattern[str]:
    return re.compile("(" + "|".join(re.escape(w) for w in words) + ")", re.IGNORECASE)


def _company_fallback(text: str) -> Optional[str]:
    if len(text) >= COMPANY_FALLBACK_MIN_LEN and COMPANY_FALLBACK_RE.fullmatch(text):
        return text
    return None


@dataclass(frozen=True)
class Slot:
    name: str
    label: str
    question: str
    patterns: Tuple[Pattern[str], ...]
    fallback: Optional[Callable[[str], Optional[str]]] = None

    def match(self, text: str) -> Optional[str]:
        """Return the trimmed capture of the first pattern that matches, else the fallback."""
        for pattern in self.patterns:
            m = pattern.search(text)
            if m:
                value = (m.group(1) if m.groups() else m.group(0)).strip()
                if value:
                    return value
        if self.fallback is not None:
            return self.fallback(text)
        return None


SLOTS: Tuple[Slot, ...] = (
    Slot(
        name="company",
        label="Empresa",
        question="Pregunta al usuario en qué empresa trabaja.",
        patterns=(
            re.compile(
                r"\b(?:trabajo en|empresa|compañía)\b(?:\s+(?:es|se llama)\b)?(?:\s*:\s*|\s+)(.+)",
                re.IGNORECASE,
            ),
        ),
        fallback=_company_fallback,
    ),
    Slot(
        name="industry",
        label="Industria",
        question="Pregunta al usuario a qué industria o sector pertenece su empresa.",
        patterns=(
            re.compile(r"(?:sector|industria|área|rubro)\s+de\s+(.+)", re.IGNORECASE),
            _keyword_pattern(INDUSTRY_KEYWORDS),
        ),
    ),
    Slot(
        name="role",
        label="Rol",
        question="Pregunta al usuario cuál es su rol o cargo dentro de la empresa.",
        patterns=(
            re.compile(
                r"\b(?:soy|trabajo como|mi rol es|posición de|cargo de)\s+(.+)",
                re.IGNORECASE,
            ),
            _keyword_pattern(ROLE_KEYWORDS),
        ),
    ),
)

SLOT_NAMES = tuple(s.name for s in SLOTS)
TOTAL_FIELDS = len(SLOTS)


# -----------------------------
# Data model
# -----------------------------
@dataclass(frozen=True)
class UserInfo:
    company: str = ""
    industry: str = ""
    role: str = ""


@dataclass(frozen=True)
class InfoStatus:
    company: bool = False
    industry: bool = False
    role: bool = False


class Stage(str, Enum):
    COLLECTING_COMPANY = "collecting_company"
    COLLECTING_INDUSTRY = "collecting_industry"
    COLLECTING_ROLE = "collecting_role"
    COMPLETE = "complete"


STAGE_BY_SLOT: Dict[str, Stage] = {
    "company": Stage.COLLECTING_COMPANY,
    "industry": Stage.COLLECTING_INDUSTRY,
    "role": Stage.COLLECTING_ROLE,
}


@dataclass(frozen=True)
class Turn:
    content: str
    is_user: bool
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "content": self.content,
            "is_user": self.is_user,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ConversationSession:
    turns: Tuple[Turn, ...] = ()
    info: UserInfo = UserInfo()
    status: InfoStatus = InfoStatus()


# -----------------------------
# Field extraction
# -----------------------------
def next_pending(status: InfoStatus) -> Optional[Slot]:
    # Slots fill strictly left to right, so the first open one is the only one gated open.
    for slot in SLOTS:
        if not getattr(status, slot.name):
            return slot
    return None


def extract_fields(info: UserInfo, status: InfoStatus, utterance: str) -> Tuple[UserInfo, InfoStatus]:
    """Try to fill the next pending field from a single user utterance.

    At most one field is filled per call. Completed fields are never touched
    again, and when nothing matches the same objects are returned.
    """
    slot = next_pending(status)
    if slot is None:
        return info, status

    value = slot.match((utterance or "").strip())
    if not value:
        return info, status

    logger.info("Captured %s=%r", slot.name, value)
    return replace(info, **{slot.name: value}), replace(status, **{slot.name: True})


# -----------------------------
# Progress tracking
# -----------------------------
def completed_count(status: InfoStatus) -> int:
    return sum(1 for name in SLOT_NAMES if getattr(status, name))


def is_complete(status: InfoStatus) -> bool:
    return completed_count(status) == TOTAL_FIELDS


def stage(status: InfoStatus) -> Stage:
    slot = next_pending(status)
    if slot is None:
        return Stage.COMPLETE
    return STAGE_BY_SLOT[slot.name]


def progress_snapshot(session: ConversationSession) -> Dict[str, object]:
    return {
        "fields": {
            s.name: {
                "label": s.label,
                "value": getattr(session.info, s.name),
                "done": getattr(session.status, s.name),
            }
            for s in SLOTS
        },
        "completed": completed_count(session.status),
        "total": TOTAL_FIELDS,
        "complete": is_complete(session.status),
        "stage": stage(session.status).value,
    }


# -----------------------------
# Context builder
# -----------------------------
def build_context(info: UserInfo, status: InfoStatus) -> str:
    lines = [f"INFORMACIÓN DEL USUARIO RECOPILADA ({completed_count(status)}/{TOTAL_FIELDS}):"]
    for slot in SLOTS:
        if getattr(status, slot.name):
            lines.append(f"✅ {slot.label}: {getattr(info, slot.name)}")
        else:
            lines.append(f"⏳ {slot.label}: pendiente")

    pending = next_pending(status)
    lines.append("")
    if pending is None:
        lines.append(
            "Ya tienes toda la información. Confirma con el usuario los datos recopilados "
            "(empresa, industria y rol) y pregúntale si son correctos."
        )
    else:
        lines.append(pending.question + " Hazlo de forma natural, una sola pregunta a la vez.")
    return "\n".join(lines)


def build_system_prompt(base_instructions: str, info: UserInfo, status: InfoStatus) -> str:
    context = build_context(info, status)
    if not base_instructions:
        return context
    return f"{base_instructions}\n\n{context}"


# -----------------------------
# Session assembly
# -----------------------------
ASSISTANT_LABEL = "Asistente: "
DEFAULT_HISTORY_TURNS = 10


def build_messages(
    system_prompt: str,
    history: Tuple[Turn, ...],
    utterance: str,
    limit: int = DEFAULT_HISTORY_TURNS,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    recent = list(history)[-limit:] if limit > 0 else []
    for turn in recent:
        if turn.is_user:
            messages.append({"role": "user", "content": turn.content})
        else:
            messages.append({"role": "assistant", "content": ASSISTANT_LABEL + turn.content})
    messages.append({"role": "user", "content": utterance})
    return messages


def new_session(greeting: Optional[str] = None) -> ConversationSession:
    if not greeting:
        return ConversationSession()
    return ConversationSession(turns=(Turn(content=greeting, is_user=False),))


def begin_turn(
    session: ConversationSession,
    utterance: str,
    base_instructions: str,
    history_limit: int = DEFAULT_HISTORY_TURNS,
) -> Tuple[ConversationSession, List[Dict[str, str]]]:
    """Apply one user utterance: extract, render context, assemble the model input.

    The messages are built from the history *before* this utterance; the
    returned session already carries the new user turn.
    """
    info, status = extract_fields(session.info, session.status, utterance)
    if status != session.status:
        logger.info("Stage %s -> %s", stage(session.status).value, stage(status).value)

    system_prompt = build_system_prompt(base_instructions, info, status)
    messages = build_messages(system_prompt, session.turns, utterance, limit=history_limit)

    updated = ConversationSession(
        turns=session.turns + (Turn(content=utterance, is_user=True),),
        info=info,
        status=status,
    )
    return updated, messages


def record_reply(session: ConversationSession, text: str) -> ConversationSession:
    return replace(session, turns=session.turns + (Turn(content=text, is_user=False),))
