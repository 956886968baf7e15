"""
Data types for the idea store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import ValidationError


IDEA_CATEGORIES = frozenset({
    "strategy", "product", "sales", "partnerships",
    "competitive", "market", "team", "operations",
})
IDEA_PRIORITIES = frozenset({"low", "medium", "high", "urgent"})
IDEA_STATUSES = frozenset({"active", "in_progress", "completed", "archived", "cancelled"})
REMINDER_TYPES = frozenset({"once", "daily", "weekly", "monthly", "custom"})

# Reminder types that get a follow-up reminder scheduled after each send
RECURRING_REMINDER_TYPES = frozenset({"daily", "weekly", "monthly"})

DEFAULT_CATEGORY = "strategy"
DEFAULT_PRIORITY = "medium"
DEFAULT_STATUS = "active"

MAX_TITLE_LENGTH = 200
MAX_CONTENT_LENGTH = 5000
MAX_USER_ID_LENGTH = 100


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Canonical stored form: ISO 8601, UTC, microseconds, no suffix.

    Fixed width so that string order equals time order in SQLite.
    """
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_timestamp(ts: str) -> datetime:
    """Parse a stored or user-supplied timestamp to an aware UTC datetime."""
    dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    return ensure_utc(dt)


def embedding_text(title: str, content: str) -> str:
    """The text an idea's vector is derived from."""
    return f"{title} {content}"


def score_from_distance(distance: float) -> float:
    """Cosine distance → similarity clamped to [0, 1]."""
    return min(1.0, max(0.0, 1.0 - float(distance)))


def normalize_tags(tags: Optional[list[str]]) -> list[str]:
    """Strip, drop empties and de-duplicate, keeping first-seen order."""
    if not tags:
        return []
    seen: set[str] = set()
    result = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError(f"Tags must be strings: {tag!r}")
        tag = tag.strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

@dataclass
class Reminder:
    """A scheduled notification tied to one idea."""
    id: str
    idea_id: str
    type: str
    scheduled_for: datetime
    message: Optional[str] = None
    is_active: bool = True
    is_sent: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "idea_id": self.idea_id,
            "type": self.type,
            "scheduled_for": self.scheduled_for.isoformat(),
            "message": self.message,
            "is_active": self.is_active,
            "is_sent": self.is_sent,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Idea:
    """
    A stored idea.

    The embedding lives only in the vector index and is never part of
    this object.
    """
    id: str
    title: str
    content: str
    user_id: str
    category: str = DEFAULT_CATEGORY
    priority: str = DEFAULT_PRIORITY
    status: str = DEFAULT_STATUS
    tags: list[str] = field(default_factory=list)
    chat_id: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    reminders: list[Reminder] = field(default_factory=list)

    @property
    def text(self) -> str:
        """Embedding input for the current title and content."""
        return embedding_text(self.title, self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "tags": list(self.tags),
            "user_id": self.user_id,
            "chat_id": self.chat_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "reminders": [r.to_dict() for r in self.reminders],
        }


def index_attributes(idea: Idea) -> dict[str, Any]:
    """Filterable fields a vector index may need to store next to the vector."""
    return {
        "category": idea.category,
        "priority": idea.priority,
        "status": idea.status,
        "user_id": idea.user_id,
        "chat_id": idea.chat_id,
        "tags": list(idea.tags),
        "created_at": ensure_utc(idea.created_at).timestamp(),
    }


@dataclass
class SearchResult:
    """One ranked hit from a semantic search."""
    idea: Idea
    score: float
    distance: float


@dataclass
class StoreStats:
    """Record count and (approximate) index footprint in bytes."""
    count: int
    index_size: int


# -----------------------------------------------------------------------------
# Inputs
# -----------------------------------------------------------------------------

@dataclass
class ReminderInput:
    type: str
    scheduled_for: datetime
    message: Optional[str] = None

    def validate(self) -> None:
        if self.type not in REMINDER_TYPES:
            raise ValidationError(
                f"Invalid reminder type {self.type!r}. Valid: {sorted(REMINDER_TYPES)}"
            )
        if not isinstance(self.scheduled_for, datetime):
            raise ValidationError("Reminder scheduled_for must be a datetime")


@dataclass
class CreateIdeaInput:
    title: str
    content: str
    user_id: str
    category: Optional[str] = None
    priority: Optional[str] = None
    tags: Optional[list[str]] = None
    chat_id: Optional[int] = None
    reminders: Optional[list[ReminderInput]] = None

    def validate(self) -> None:
        _validate_text("title", self.title, MAX_TITLE_LENGTH)
        _validate_text("content", self.content, MAX_CONTENT_LENGTH)
        _validate_text("user_id", self.user_id, MAX_USER_ID_LENGTH)
        _validate_choice("category", self.category, IDEA_CATEGORIES)
        _validate_choice("priority", self.priority, IDEA_PRIORITIES)
        if self.chat_id is not None and not isinstance(self.chat_id, int):
            raise ValidationError(f"chat_id must be an integer: {self.chat_id!r}")
        normalize_tags(self.tags)
        for reminder in self.reminders or []:
            reminder.validate()


@dataclass
class UpdateIdeaInput:
    """Partial update. Fields left as None are not touched."""
    id: str
    title: Optional[str] = None
    content: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    tags: Optional[list[str]] = None
    reminders: Optional[list[ReminderInput]] = None

    @property
    def touches_text(self) -> bool:
        return self.title is not None or self.content is not None

    def validate(self) -> None:
        if not self.id:
            raise ValidationError("id is required")
        if self.title is not None:
            _validate_text("title", self.title, MAX_TITLE_LENGTH)
        if self.content is not None:
            _validate_text("content", self.content, MAX_CONTENT_LENGTH)
        _validate_choice("category", self.category, IDEA_CATEGORIES)
        _validate_choice("priority", self.priority, IDEA_PRIORITIES)
        _validate_choice("status", self.status, IDEA_STATUSES)
        normalize_tags(self.tags)
        for reminder in self.reminders or []:
            reminder.validate()


@dataclass
class DateRange:
    """Inclusive created_at range. Either end may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class IdeaFilter:
    """Structured predicates, all of which must hold."""
    user_id: Optional[str] = None
    chat_id: Optional[int] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    tags: Optional[list[str]] = None
    date_range: Optional[DateRange] = None

    def validate(self) -> None:
        _validate_choice("category", self.category, IDEA_CATEGORIES)
        _validate_choice("priority", self.priority, IDEA_PRIORITIES)
        _validate_choice("status", self.status, IDEA_STATUSES)
        normalize_tags(self.tags)

    def matches(self, idea: Idea) -> bool:
        """Evaluate the filter against a hydrated idea."""
        if self.user_id is not None and idea.user_id != self.user_id:
            return False
        if self.chat_id is not None and idea.chat_id != self.chat_id:
            return False
        if self.category is not None and idea.category != self.category:
            return False
        if self.priority is not None and idea.priority != self.priority:
            return False
        if self.status is not None and idea.status != self.status:
            return False
        wanted = normalize_tags(self.tags)
        if wanted and not set(wanted) & set(idea.tags):
            return False
        if self.date_range is not None:
            created = ensure_utc(idea.created_at)
            if self.date_range.start and created < ensure_utc(self.date_range.start):
                return False
            if self.date_range.end and created > ensure_utc(self.date_range.end):
                return False
        return True


def _validate_text(name: str, value: Optional[str], max_length: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required and must not be empty")
    if len(value) > max_length:
        raise ValidationError(f"{name} must be at most {max_length} characters")


def _validate_choice(name: str, value: Optional[str], choices: frozenset) -> None:
    if value is not None and value not in choices:
        raise ValidationError(f"Invalid {name} {value!r}. Valid: {sorted(choices)}")
