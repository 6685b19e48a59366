#!/usr/bin/env python3
"""
Plain data records passed between the ingestion stages.

``Item`` and ``Author`` are read-only projections of Hacker News API payloads.
The ``*Record`` classes are what gets written to the database, and
``SummaryJob`` / ``ArticleContent`` travel through the summarization queue.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

ITEM_TYPES = ("story", "comment", "job", "poll", "pollopt")


@dataclass
class Item:
    """A story, comment or other entry as returned by ``/item/<id>.json``."""

    id: int
    type: str = ""
    title: str = ""
    url: str = ""
    score: int = 0
    author: str = ""
    descendant_count: int = 0
    text: str = ""
    created_at: int = 0
    child_ids: List[int] = field(default_factory=list)
    deleted: bool = False
    dead: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Item":
        """Build an Item from the API's JSON object (``by``, ``descendants``, ``time``, ``kids``)."""
        return cls(
            id=int(payload["id"]),
            type=payload.get("type") or "",
            title=payload.get("title") or "",
            url=payload.get("url") or "",
            score=int(payload.get("score") or 0),
            author=payload.get("by") or "",
            descendant_count=int(payload.get("descendants") or 0),
            text=payload.get("text") or "",
            created_at=int(payload.get("time") or 0),
            child_ids=[int(k) for k in payload.get("kids") or []],
            deleted=bool(payload.get("deleted", False)),
            dead=bool(payload.get("dead", False)),
        )

    @property
    def is_story(self) -> bool:
        return self.type == "story"

    @property
    def is_live_comment(self) -> bool:
        return self.type == "comment" and not self.deleted and not self.dead


@dataclass
class Author:
    """A user profile from ``/user/<username>.json``."""

    username: str
    created_at: int = 0
    karma: int = 0
    about: str = ""
    submitted_ids: List[int] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Author":
        return cls(
            username=payload["id"],
            created_at=int(payload.get("created") or 0),
            karma=int(payload.get("karma") or 0),
            about=payload.get("about") or "",
            submitted_ids=[int(s) for s in payload.get("submitted") or []],
        )


@dataclass
class StoryRecord:
    id: int
    title: str
    url: str
    score: int
    author: str
    descendant_count: int
    posted_at: int
    rank: Optional[int] = None

    @classmethod
    def from_item(cls, item: Item, rank: Optional[int] = None) -> "StoryRecord":
        return cls(
            id=item.id,
            title=item.title,
            url=item.url,
            score=item.score,
            author=item.author,
            descendant_count=item.descendant_count,
            posted_at=item.created_at,
            rank=rank,
        )

    def as_params(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CommentRecord:
    id: int
    story_id: int
    parent_id: Optional[int]
    text: str
    author: str
    posted_at: int

    @classmethod
    def from_item(cls, item: Item, story_id: int, parent_id: Optional[int]) -> "CommentRecord":
        return cls(
            id=item.id,
            story_id=story_id,
            parent_id=parent_id,
            text=item.text,
            author=item.author,
            posted_at=item.created_at,
        )

    def as_params(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UserRecord:
    username: str
    created_at: int
    karma: int
    about: str
    submitted_ids: List[int] = field(default_factory=list)

    @classmethod
    def from_author(cls, author: Author) -> "UserRecord":
        return cls(
            username=author.username,
            created_at=author.created_at,
            karma=author.karma,
            about=author.about,
            submitted_ids=list(author.submitted_ids),
        )

    def as_params(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SummaryJob:
    """One fetch-summarize-persist unit of work.

    ``backfill_topics`` jobs belong to stories that already have a summary;
    only their topics are written.
    """

    story_id: int
    url: str
    title: str
    backfill_topics: bool = False


@dataclass
class ArticleContent:
    content: str
    title: str
    can_embed: bool = True
