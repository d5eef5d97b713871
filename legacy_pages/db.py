"""
Database abstraction for SQL stores and an in-memory test implementation.

A legacy page is stored as an aggregate: the page row plus the general
knowledge, memorial details, media items, events, relationships and insights
that only exist in relation to it. Every aggregate write runs as a single
transaction.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from legacy_pages.errors import SLUG_TAKEN, Conflict

DEFAULT_PAGE_STATUS = "published"


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    external_id: str
    name: str
    email: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class PageRecord:
    user_id: str
    page_type: str
    slug: str
    honouree_name: str
    date_of_birth: date
    date_of_passing: Optional[date] = None
    creator_name: str = ""
    relationship: str = ""
    story: str = ""
    cover_photo: Optional[str] = None
    honouree_photo: Optional[str] = None
    status: str = DEFAULT_PAGE_STATUS
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class GeneralKnowledgeRecord:
    legacy_page_id: str
    personality: Optional[str] = None
    values: Optional[str] = None
    beliefs: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class MemorialDetailsRecord:
    legacy_page_id: str
    funeral: dict = field(default_factory=dict)
    service: dict = field(default_factory=dict)
    viewing: dict = field(default_factory=dict)
    procession: dict = field(default_factory=dict)
    resting_place: dict = field(default_factory=dict)
    eulogy: Optional[str] = None
    tribute: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class MediaItemRecord:
    legacy_page_id: str
    type: str
    url: str
    date_taken: date
    location: Optional[str] = None
    description: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class EventRecord:
    legacy_page_id: str
    name: str
    date: date
    time: str
    location: str
    rsvp_by: Optional[date] = None
    description: Optional[str] = None
    message: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class RelationshipRecord:
    legacy_page_id: str
    type: str
    name: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class InsightRecord:
    legacy_page_id: str
    message: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class PageAggregate:
    page: PageRecord
    general_knowledge: Optional[GeneralKnowledgeRecord] = None
    memorial_details: Optional[MemorialDetailsRecord] = None
    media_items: list[MediaItemRecord] = field(default_factory=list)
    events: list[EventRecord] = field(default_factory=list)
    relationships: list[RelationshipRecord] = field(default_factory=list)
    insights: list[InsightRecord] = field(default_factory=list)

    def stored_file_urls(self) -> list[str]:
        urls = [self.page.cover_photo, self.page.honouree_photo]
        urls.extend(item.url for item in self.media_items)
        return [url for url in urls if url]


@dataclass
class PageUpdate:
    """
    Changes applied by ``DbClient.replace_page``.

    A collection left as None is not touched; a list replaces every existing
    row of that kind.
    """

    page: PageRecord
    general_knowledge: Optional[GeneralKnowledgeRecord] = None
    memorial_details: Optional[MemorialDetailsRecord] = None
    remove_memorial_details: bool = False
    media_items: Optional[list[MediaItemRecord]] = None
    events: Optional[list[EventRecord]] = None
    relationships: Optional[list[RelationshipRecord]] = None
    insights: Optional[list[InsightRecord]] = None


class DbClient(Protocol):
    """Interface for database access."""

    def get_user_by_external_id(self, external_id: str) -> Optional[UserRecord]:
        ...

    def upsert_user(self, external_id: str, *, name: str, email: str) -> UserRecord:
        ...

    def delete_user(self, external_id: str) -> bool:
        ...

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        ...

    def find_page_by_user(self, user_id: str) -> Optional[PageRecord]:
        ...

    def find_page_by_slug(self, slug: str) -> Optional[PageRecord]:
        ...

    def get_page_aggregate(self, page_id: str) -> Optional[PageAggregate]:
        ...

    def create_page(self, aggregate: PageAggregate) -> PageRecord:
        ...

    def replace_page(self, update: PageUpdate) -> None:
        ...

    def delete_page(self, page_id: str) -> None:
        ...


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.pages: Dict[str, PageRecord] = {}
        self.general_knowledge: Dict[str, GeneralKnowledgeRecord] = {}
        self.memorial_details: Dict[str, MemorialDetailsRecord] = {}
        self.media_items: Dict[str, list[MediaItemRecord]] = {}
        self.events: Dict[str, list[EventRecord]] = {}
        self.relationships: Dict[str, list[RelationshipRecord]] = {}
        self.insights: Dict[str, list[InsightRecord]] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.users.clear()
        self.pages.clear()
        self.general_knowledge.clear()
        self.memorial_details.clear()
        self.media_items.clear()
        self.events.clear()
        self.relationships.clear()
        self.insights.clear()

    def get_user_by_external_id(self, external_id: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.external_id == external_id:
                return copy.deepcopy(user)
        return None

    def upsert_user(self, external_id: str, *, name: str, email: str) -> UserRecord:
        for user in self.users.values():
            if user.external_id == external_id:
                user.name = name
                user.email = email
                user.updated_at = _now()
                return copy.deepcopy(user)
        user = UserRecord(external_id=external_id, name=name, email=email)
        self.users[user.id] = user
        return copy.deepcopy(user)

    def delete_user(self, external_id: str) -> bool:
        for user_id, user in list(self.users.items()):
            if user.external_id == external_id:
                del self.users[user_id]
                return True
        return False

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        page = self.pages.get(page_id)
        return copy.deepcopy(page) if page else None

    def find_page_by_user(self, user_id: str) -> Optional[PageRecord]:
        for page in self.pages.values():
            if page.user_id == user_id:
                return copy.deepcopy(page)
        return None

    def find_page_by_slug(self, slug: str) -> Optional[PageRecord]:
        for page in self.pages.values():
            if page.slug == slug:
                return copy.deepcopy(page)
        return None

    def get_page_aggregate(self, page_id: str) -> Optional[PageAggregate]:
        page = self.pages.get(page_id)
        if not page:
            return None
        return copy.deepcopy(
            PageAggregate(
                page=page,
                general_knowledge=self.general_knowledge.get(page_id),
                memorial_details=self.memorial_details.get(page_id),
                media_items=self.media_items.get(page_id, []),
                events=self.events.get(page_id, []),
                relationships=self.relationships.get(page_id, []),
                insights=self.insights.get(page_id, []),
            )
        )

    def _slug_taken(self, slug: str, page_id: str) -> bool:
        return any(
            page.slug == slug and page.id != page_id for page in self.pages.values()
        )

    def create_page(self, aggregate: PageAggregate) -> PageRecord:
        aggregate = copy.deepcopy(aggregate)
        page = aggregate.page
        if self._slug_taken(page.slug, page.id):
            raise Conflict(SLUG_TAKEN)
        self.pages[page.id] = page
        if aggregate.general_knowledge:
            self.general_knowledge[page.id] = aggregate.general_knowledge
        if aggregate.memorial_details:
            self.memorial_details[page.id] = aggregate.memorial_details
        self.media_items[page.id] = aggregate.media_items
        self.events[page.id] = aggregate.events
        self.relationships[page.id] = aggregate.relationships
        self.insights[page.id] = aggregate.insights
        return copy.deepcopy(page)

    def replace_page(self, update: PageUpdate) -> None:
        update = copy.deepcopy(update)
        page = update.page
        if page.id not in self.pages:
            raise KeyError(page.id)
        if self._slug_taken(page.slug, page.id):
            raise Conflict(SLUG_TAKEN)
        page.updated_at = _now()
        self.pages[page.id] = page

        if update.general_knowledge:
            existing = self.general_knowledge.get(page.id)
            if existing:
                update.general_knowledge.id = existing.id
                update.general_knowledge.created_at = existing.created_at
            self.general_knowledge[page.id] = update.general_knowledge

        if update.remove_memorial_details:
            self.memorial_details.pop(page.id, None)
        elif update.memorial_details:
            existing = self.memorial_details.get(page.id)
            if existing:
                update.memorial_details.id = existing.id
                update.memorial_details.created_at = existing.created_at
            self.memorial_details[page.id] = update.memorial_details

        if update.media_items is not None:
            self.media_items[page.id] = update.media_items
        if update.events is not None:
            self.events[page.id] = update.events
        if update.relationships is not None:
            self.relationships[page.id] = update.relationships
        if update.insights is not None:
            self.insights[page.id] = update.insights

    def delete_page(self, page_id: str) -> None:
        self.media_items.pop(page_id, None)
        self.events.pop(page_id, None)
        self.relationships.pop(page_id, None)
        self.insights.pop(page_id, None)
        self.general_knowledge.pop(page_id, None)
        self.memorial_details.pop(page_id, None)
        self.pages.pop(page_id, None)


def _to_row(row_cls, record):
    return row_cls(**asdict(record))


def _to_record(record_cls, row):
    return record_cls(**{f.name: getattr(row, f.name) for f in fields(record_cls)})


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection so every session sees the same database.
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {"pool_pre_ping": True, "pool_recycle": 1800}


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        self.engine = create_engine(
            database_url, future=True, **_engine_options(database_url)
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def get_user_by_external_id(self, external_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.external_id == external_id)
            ).scalar_one_or_none()
            return _to_record(UserRecord, row) if row else None

    def upsert_user(self, external_id: str, *, name: str, email: str) -> UserRecord:
        with self.Session.begin() as session:
            row = session.execute(
                select(UserRow).where(UserRow.external_id == external_id)
            ).scalar_one_or_none()
            if row:
                row.name = name
                row.email = email
                row.updated_at = _now()
            else:
                row = _to_row(
                    UserRow, UserRecord(external_id=external_id, name=name, email=email)
                )
                session.add(row)
            session.flush()
            return _to_record(UserRecord, row)

    def delete_user(self, external_id: str) -> bool:
        with self.Session.begin() as session:
            result = session.execute(
                delete(UserRow).where(UserRow.external_id == external_id)
            )
            return bool(result.rowcount)

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        with self.Session() as session:
            row = session.get(PageRow, page_id)
            return _to_record(PageRecord, row) if row else None

    def find_page_by_user(self, user_id: str) -> Optional[PageRecord]:
        with self.Session() as session:
            row = session.execute(
                select(PageRow).where(PageRow.user_id == user_id).limit(1)
            ).scalar_one_or_none()
            return _to_record(PageRecord, row) if row else None

    def find_page_by_slug(self, slug: str) -> Optional[PageRecord]:
        with self.Session() as session:
            row = session.execute(
                select(PageRow).where(PageRow.slug == slug)
            ).scalar_one_or_none()
            return _to_record(PageRecord, row) if row else None

    def get_page_aggregate(self, page_id: str) -> Optional[PageAggregate]:
        with self.Session() as session:
            row = session.get(PageRow, page_id)
            if not row:
                return None

            def children(row_cls, record_cls, *ordering):
                rows = session.execute(
                    select(row_cls)
                    .where(row_cls.legacy_page_id == page_id)
                    .order_by(*ordering, row_cls.created_at.asc(), row_cls.id.asc())
                ).scalars()
                return [_to_record(record_cls, child) for child in rows]

            general_knowledge = children(GeneralKnowledgeRow, GeneralKnowledgeRecord)
            memorial_details = children(MemorialDetailsRow, MemorialDetailsRecord)
            return PageAggregate(
                page=_to_record(PageRecord, row),
                general_knowledge=general_knowledge[0] if general_knowledge else None,
                memorial_details=memorial_details[0] if memorial_details else None,
                media_items=children(MediaItemRow, MediaItemRecord, MediaItemRow.position),
                events=children(EventRow, EventRecord, EventRow.position),
                relationships=children(
                    RelationshipRow, RelationshipRecord, RelationshipRow.position
                ),
                insights=children(InsightRow, InsightRecord, InsightRow.position),
            )

    def create_page(self, aggregate: PageAggregate) -> PageRecord:
        try:
            with self.Session.begin() as session:
                session.add(_to_row(PageRow, aggregate.page))
                # The page row must exist before dependents reference it.
                session.flush()
                if aggregate.general_knowledge:
                    session.add(
                        _to_row(GeneralKnowledgeRow, aggregate.general_knowledge)
                    )
                if aggregate.memorial_details:
                    session.add(_to_row(MemorialDetailsRow, aggregate.memorial_details))
                self._add_children(session, MediaItemRow, aggregate.media_items)
                self._add_children(session, EventRow, aggregate.events)
                self._add_children(session, RelationshipRow, aggregate.relationships)
                self._add_children(session, InsightRow, aggregate.insights)
        except IntegrityError as exc:
            _raise_for_slug(exc)
        return copy.deepcopy(aggregate.page)

    def replace_page(self, update: PageUpdate) -> None:
        page = update.page
        try:
            with self.Session.begin() as session:
                row = session.get(PageRow, page.id)
                if not row:
                    raise KeyError(page.id)
                for name, value in asdict(page).items():
                    if name not in ("id", "user_id", "created_at"):
                        setattr(row, name, value)
                row.updated_at = _now()

                if update.general_knowledge:
                    self._upsert_one(
                        session, GeneralKnowledgeRow, update.general_knowledge
                    )
                if update.remove_memorial_details:
                    session.execute(
                        delete(MemorialDetailsRow).where(
                            MemorialDetailsRow.legacy_page_id == page.id
                        )
                    )
                elif update.memorial_details:
                    self._upsert_one(session, MemorialDetailsRow, update.memorial_details)

                for row_cls, records in (
                    (MediaItemRow, update.media_items),
                    (EventRow, update.events),
                    (RelationshipRow, update.relationships),
                    (InsightRow, update.insights),
                ):
                    if records is None:
                        continue
                    session.execute(
                        delete(row_cls).where(row_cls.legacy_page_id == page.id)
                    )
                    self._add_children(session, row_cls, records)
        except IntegrityError as exc:
            _raise_for_slug(exc)

    def delete_page(self, page_id: str) -> None:
        with self.Session.begin() as session:
            for row_cls in (
                MediaItemRow,
                EventRow,
                RelationshipRow,
                InsightRow,
                GeneralKnowledgeRow,
                MemorialDetailsRow,
            ):
                session.execute(delete(row_cls).where(row_cls.legacy_page_id == page_id))
            session.execute(delete(PageRow).where(PageRow.id == page_id))

    @staticmethod
    def _add_children(session: Session, row_cls, records) -> None:
        # Collections are read back in submission order.
        for position, record in enumerate(records):
            session.add(row_cls(position=position, **asdict(record)))

    @staticmethod
    def _upsert_one(session: Session, row_cls, record) -> None:
        existing = session.execute(
            select(row_cls).where(row_cls.legacy_page_id == record.legacy_page_id)
        ).scalar_one_or_none()
        if not existing:
            session.add(_to_row(row_cls, record))
            return
        for name, value in asdict(record).items():
            if name not in ("id", "legacy_page_id", "created_at"):
                setattr(existing, name, value)
        existing.updated_at = _now()


def _raise_for_slug(exc: IntegrityError):
    if "slug" in str(exc.orig).lower():
        raise Conflict(SLUG_TAKEN) from exc
    raise exc


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    external_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class PageRow(Base):
    __tablename__ = "legacy_pages"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    page_type = Column(String, nullable=False)
    slug = Column(String, nullable=False, unique=True, index=True)
    honouree_name = Column(String, nullable=False)
    date_of_birth = Column(Date, nullable=False)
    date_of_passing = Column(Date, nullable=True)
    creator_name = Column(String, nullable=False, default="")
    relationship = Column(String, nullable=False, default="")
    story = Column(Text, nullable=False, default="")
    cover_photo = Column(String, nullable=True)
    honouree_photo = Column(String, nullable=True)
    status = Column(String, nullable=False, default=DEFAULT_PAGE_STATUS)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class GeneralKnowledgeRow(Base):
    __tablename__ = "general_knowledge"

    id = Column(String, primary_key=True)
    legacy_page_id = Column(
        String, ForeignKey("legacy_pages.id"), nullable=False, unique=True
    )
    personality = Column(Text, nullable=True)
    values = Column(Text, nullable=True)
    beliefs = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class MemorialDetailsRow(Base):
    __tablename__ = "memorial_details"

    id = Column(String, primary_key=True)
    legacy_page_id = Column(
        String, ForeignKey("legacy_pages.id"), nullable=False, unique=True
    )
    funeral = Column(JSON, nullable=False)
    service = Column(JSON, nullable=False)
    viewing = Column(JSON, nullable=False)
    procession = Column(JSON, nullable=False)
    resting_place = Column(JSON, nullable=False)
    eulogy = Column(Text, nullable=True)
    tribute = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class MediaItemRow(Base):
    __tablename__ = "media_items"

    id = Column(String, primary_key=True)
    legacy_page_id = Column(
        String, ForeignKey("legacy_pages.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    type = Column(String, nullable=False)
    url = Column(String, nullable=False)
    date_taken = Column(Date, nullable=False)
    location = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class EventRow(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True)
    legacy_page_id = Column(
        String, ForeignKey("legacy_pages.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    time = Column(String, nullable=False)
    rsvp_by = Column(Date, nullable=True)
    location = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class RelationshipRow(Base):
    __tablename__ = "relationships"

    id = Column(String, primary_key=True)
    legacy_page_id = Column(
        String, ForeignKey("legacy_pages.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    type = Column(String, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class InsightRow(Base):
    __tablename__ = "insights"

    id = Column(String, primary_key=True)
    legacy_page_id = Column(
        String, ForeignKey("legacy_pages.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
