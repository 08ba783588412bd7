"""
Board task schema.

Task lifecycle:
  bulk-add → reorder / move → archive (done) → delete

Active tasks carry an `order` that is unique across the board and a
`tag` (category letter + rank inside the category) derived from it.
Archived tasks keep their last values but take no part in ordering.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any


# Top-level collections
BOARDS = "boards"
MEMBERS = "boardMembers"
INVITES = "boardInvites"
USERS = "users"


class ValidationError(Exception):
    """Raised when user input is rejected before any board change."""
    pass


class TaskCategory(Enum):
    """Board columns, in display and renumbering order."""
    NOW = "Now"
    DAY = "Day"
    WEEK = "Week"
    MONTH = "Month"

    @property
    def letter(self) -> str:
        return self.value[0]

    @classmethod
    def from_str(cls, value: str) -> "TaskCategory":
        """Parse a category name case-insensitively; unknown names are rejected."""
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValidationError(
                f"Unknown category: '{value}'. "
                f"Allowed: {', '.join(c.value for c in CATEGORY_ORDER)}"
            )


CATEGORY_ORDER: List[TaskCategory] = [
    TaskCategory.NOW,
    TaskCategory.DAY,
    TaskCategory.WEEK,
    TaskCategory.MONTH,
]


class TaskStatus(Enum):
    ACTIVE = "active"
    DONE = "done"

    @classmethod
    def from_str(cls, value: Optional[str]) -> "TaskStatus":
        # Older documents have no status field at all
        if value == "done":
            return cls.DONE
        return cls.ACTIVE


class MemberRole(Enum):
    OWNER = "owner"
    MEMBER = "member"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO strings or datetimes; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def make_tag(category: TaskCategory, rank: int) -> str:
    """Display label for the task at 1-based `rank` inside `category`."""
    return f"{category.letter}{rank}"


def clean_titles(titles) -> List[str]:
    """
    Normalize a title batch: accepts a list or newline-separated text,
    strips whitespace and drops blank lines.

    Raises ValidationError if nothing is left.
    """
    if isinstance(titles, str):
        titles = titles.splitlines()
    cleaned = [str(t).strip() for t in (titles or [])]
    cleaned = [t for t in cleaned if t]
    if not cleaned:
        raise ValidationError("At least one title is required")
    return cleaned


@dataclass
class Task:
    """A single board task."""

    id: str
    title: str
    category: TaskCategory = TaskCategory.NOW
    order: int = 0
    tag: str = ""
    status: TaskStatus = TaskStatus.ACTIVE
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status != TaskStatus.DONE

    @property
    def sort_key(self):
        """Total order used everywhere: `order`, then `id` for ties."""
        return (self.order, self.id)

    def to_doc(self) -> Dict[str, Any]:
        """Serialize to the persisted document shape (id excluded)."""
        doc = {
            "title": self.title,
            "category": self.category.value,
            "tag": self.tag,
            "order": self.order,
            "status": self.status.value,
        }
        if self.completed_at:
            doc["completedAt"] = self.completed_at.isoformat()
        if self.created_by:
            doc["createdBy"] = self.created_by
        return doc

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        data = {"id": self.id, **self.to_doc()}
        data.setdefault("completedAt", None)
        return data

    @classmethod
    def from_doc(cls, doc_id: str, data: Dict[str, Any]) -> "Task":
        """Deserialize a stored task document."""
        status = TaskStatus.from_str(data.get("status"))
        try:
            category = TaskCategory.from_str(data.get("category", "Now"))
        except ValidationError:
            category = TaskCategory.NOW
        return cls(
            id=doc_id,
            title=data.get("title", ""),
            category=category,
            order=int(data.get("order", 0) or 0),
            tag=data.get("tag", ""),
            status=status,
            completed_at=parse_timestamp(data.get("completedAt")) if status == TaskStatus.DONE else None,
            created_by=data.get("createdBy"),
        )


@dataclass
class Board:
    """A named, shared task collection."""

    board_id: str
    name: str
    owner_id: str
    created_at: datetime = field(default_factory=utc_now)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ownerId": self.owner_id,
            "createdAt": self.created_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.board_id, **self.to_doc()}

    @classmethod
    def from_doc(cls, doc_id: str, data: Dict[str, Any]) -> "Board":
        return cls(
            board_id=doc_id,
            name=data.get("name") or "Untitled",
            owner_id=data.get("ownerId", ""),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
        )


@dataclass
class BoardMember:
    board_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime = field(default_factory=utc_now)
    name: Optional[str] = None  # resolved from the users collection, not stored

    @property
    def member_id(self) -> str:
        return member_doc_id(self.board_id, self.user_id)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "boardId": self.board_id,
            "userId": self.user_id,
            "role": self.role.value,
            "joinedAt": self.joined_at.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.to_doc(), "name": self.name}

    @classmethod
    def from_doc(cls, data: Dict[str, Any]) -> "BoardMember":
        try:
            role = MemberRole(data.get("role", "member"))
        except ValueError:
            role = MemberRole.MEMBER
        return cls(
            board_id=data.get("boardId", ""),
            user_id=data.get("userId", ""),
            role=role,
            joined_at=parse_timestamp(data.get("joinedAt")) or utc_now(),
        )


@dataclass
class Invite:
    invite_id: str
    board_id: str
    created_by: str
    token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def to_doc(self) -> Dict[str, Any]:
        return {
            "boardId": self.board_id,
            "createdBy": self.created_by,
            "token": self.token,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }

    @classmethod
    def from_doc(cls, doc_id: str, data: Dict[str, Any]) -> "Invite":
        return cls(
            invite_id=doc_id,
            board_id=data.get("boardId", ""),
            created_by=data.get("createdBy", ""),
            token=data.get("token", ""),
            expires_at=parse_timestamp(data.get("expiresAt")) or utc_now(),
            created_at=parse_timestamp(data.get("createdAt")) or utc_now(),
        )


def member_doc_id(board_id: str, user_id: str) -> str:
    return f"{board_id}_{user_id}"


def tasks_collection(board_id: str) -> str:
    """Collection path holding a board's tasks."""
    return f"boards/{board_id}/tasks"
