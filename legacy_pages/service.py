"""
Page aggregate service: create, retrieve, replace and delete a legacy page
together with its dependent records and stored files.

The caller's external identity is always passed in explicitly. Files are
uploaded before the rows that reference them are written; every aggregate
write is a single database transaction, and files uploaded for a write that
fails are removed again. Stored files that are no longer referenced after a
successful write are removed best-effort.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional, Union

from legacy_pages.db import (
    DbClient,
    EventRecord,
    GeneralKnowledgeRecord,
    InsightRecord,
    MediaItemRecord,
    MemorialDetailsRecord,
    PageAggregate,
    PageRecord,
    PageUpdate,
    RelationshipRecord,
    UserRecord,
)
from legacy_pages.errors import (
    SLUG_TAKEN,
    AuthenticationRequired,
    Conflict,
    Forbidden,
    InvalidSubmission,
    NotFound,
)
from legacy_pages.schemas import (
    FileUpload,
    MediaItemIn,
    MemorialDetailsIn,
    PageFields,
    PageSubmission,
    PageType,
)
from legacy_pages.storage import (
    COVER_PHOTOS,
    HONOUREE_PHOTOS,
    MEDIA,
    StorageClient,
    build_object_path,
)

logger = logging.getLogger(__name__)


class UploadBatch:
    """Files stored while handling one request."""

    def __init__(self, storage: StorageClient):
        self.storage = storage
        self.paths: list[str] = []

    def store(self, prefix: str, upload: Optional[FileUpload]) -> Optional[str]:
        if upload is None:
            return None
        path = build_object_path(prefix, upload.filename)
        url = self.storage.store(path, upload.data, upload.content_type)
        self.paths.append(path)
        return url

    def discard(self) -> None:
        for path in self.paths:
            try:
                self.storage.remove(path)
            except Exception:
                logger.warning("Failed to remove orphaned upload %s", path, exc_info=True)
        self.paths.clear()


def _page_values(fields: PageFields) -> dict:
    values = fields.model_dump()
    values["page_type"] = fields.page_type.value
    return values


def _memorial_record(page_id: str, details: MemorialDetailsIn) -> MemorialDetailsRecord:
    return MemorialDetailsRecord(legacy_page_id=page_id, **details.model_dump(mode="json"))


def _media_record(page_id: str, item: MediaItemIn, url: str) -> MediaItemRecord:
    return MediaItemRecord(
        legacy_page_id=page_id,
        type=item.type.value,
        url=url,
        date_taken=item.date_taken,
        location=item.location,
        description=item.description,
    )


class PageService:
    def __init__(self, db: DbClient, storage: StorageClient):
        self.db = db
        self.storage = storage

    def resolve_user(self, external_id: Optional[str]) -> UserRecord:
        if not external_id:
            raise AuthenticationRequired("Unauthorized")
        user = self.db.get_user_by_external_id(external_id)
        if not user:
            raise NotFound("User not found")
        return user

    def create_page(self, external_id: Optional[str], submission: PageSubmission) -> str:
        user = self.resolve_user(external_id)
        if self.db.find_page_by_user(user.id):
            raise Conflict("User already has a legacy page")
        fields = submission.fields
        if self.db.find_page_by_slug(fields.slug):
            raise Conflict(SLUG_TAKEN)
        for index, item in enumerate(submission.media_items or []):
            if item.file is None:
                raise InvalidSubmission(f"mediaItems[{index}]: a file is required")

        uploads = UploadBatch(self.storage)
        try:
            page = PageRecord(
                user_id=user.id,
                cover_photo=uploads.store(COVER_PHOTOS, submission.cover_photo),
                honouree_photo=uploads.store(HONOUREE_PHOTOS, submission.honouree_photo),
                **_page_values(fields),
            )
            aggregate = PageAggregate(page=page)
            if not submission.general_knowledge.is_empty():
                aggregate.general_knowledge = GeneralKnowledgeRecord(
                    legacy_page_id=page.id, **submission.general_knowledge.model_dump()
                )
            if fields.page_type == PageType.MEMORIAL:
                aggregate.memorial_details = _memorial_record(
                    page.id, submission.memorial_details or MemorialDetailsIn()
                )
            aggregate.media_items = [
                _media_record(page.id, item, uploads.store(MEDIA, item.file))
                for item in submission.media_items or []
            ]
            aggregate.events = [
                EventRecord(legacy_page_id=page.id, **event.model_dump())
                for event in submission.events or []
            ]
            aggregate.relationships = [
                RelationshipRecord(legacy_page_id=page.id, **relationship.model_dump())
                for relationship in submission.relationships or []
            ]
            aggregate.insights = [
                InsightRecord(legacy_page_id=page.id, **insight.model_dump())
                for insight in submission.insights or []
            ]
            self.db.create_page(aggregate)
        except Exception:
            uploads.discard()
            raise

        logger.info("Created legacy page %s (%s) for user %s", page.id, page.slug, user.id)
        return page.id

    def get_page(self, page_id: str) -> PageAggregate:
        aggregate = self.db.get_page_aggregate(page_id)
        if not aggregate:
            raise NotFound("Legacy page not found")
        return aggregate

    def get_own_page(
        self, external_id: Optional[str], include_dependents: bool = False
    ) -> Union[PageRecord, PageAggregate, None]:
        """
        Return the caller's page, or None if they have not created one.

        The bare row is enough for navigation and the create-page guard; the
        edit form needs the dependents as well.
        """
        user = self.resolve_user(external_id)
        page = self.db.find_page_by_user(user.id)
        if not page or not include_dependents:
            return page
        return self.db.get_page_aggregate(page.id)

    def replace_page(
        self, external_id: Optional[str], page_id: str, submission: PageSubmission
    ) -> str:
        user = self.resolve_user(external_id)
        current = self.db.get_page_aggregate(page_id)
        if not current or current.page.user_id != user.id:
            raise NotFound("Legacy page not found or unauthorized")

        fields = submission.fields
        if fields.slug != current.page.slug:
            other = self.db.find_page_by_slug(fields.slug)
            if other and other.id != page_id:
                raise Conflict(SLUG_TAKEN)

        uploads = UploadBatch(self.storage)
        try:
            page = dataclasses.replace(current.page, **_page_values(fields))
            new_cover = uploads.store(COVER_PHOTOS, submission.cover_photo)
            if new_cover:
                page.cover_photo = new_cover
            new_honouree = uploads.store(HONOUREE_PHOTOS, submission.honouree_photo)
            if new_honouree:
                page.honouree_photo = new_honouree

            update = PageUpdate(
                page=page,
                general_knowledge=GeneralKnowledgeRecord(
                    legacy_page_id=page_id, **submission.general_knowledge.model_dump()
                ),
            )
            if fields.page_type == PageType.MEMORIAL:
                if submission.memorial_details is not None:
                    update.memorial_details = _memorial_record(
                        page_id, submission.memorial_details
                    )
                elif current.memorial_details is None:
                    update.memorial_details = _memorial_record(page_id, MemorialDetailsIn())
            elif current.memorial_details is not None:
                update.remove_memorial_details = True

            # An absent or empty collection leaves the stored rows untouched.
            if submission.media_items:
                update.media_items = self._replacement_media(
                    current, submission.media_items, uploads
                )
            if submission.events:
                update.events = [
                    EventRecord(legacy_page_id=page_id, **event.model_dump())
                    for event in submission.events
                ]
            if submission.relationships:
                update.relationships = [
                    RelationshipRecord(legacy_page_id=page_id, **relationship.model_dump())
                    for relationship in submission.relationships
                ]
            if submission.insights:
                update.insights = [
                    InsightRecord(legacy_page_id=page_id, **insight.model_dump())
                    for insight in submission.insights
                ]
            self.db.replace_page(update)
        except Exception:
            uploads.discard()
            raise

        stale = []
        if new_cover and current.page.cover_photo:
            stale.append(current.page.cover_photo)
        if new_honouree and current.page.honouree_photo:
            stale.append(current.page.honouree_photo)
        if update.media_items is not None:
            kept = {item.url for item in update.media_items}
            stale.extend(item.url for item in current.media_items if item.url not in kept)
        for url in stale:
            self._remove_stored_file(url)

        logger.info("Updated legacy page %s for user %s", page_id, user.id)
        return page_id

    def delete_page(self, external_id: Optional[str], page_id: str) -> None:
        user = self.resolve_user(external_id)
        aggregate = self.db.get_page_aggregate(page_id)
        if not aggregate:
            raise NotFound("Page not found")
        if aggregate.page.user_id != user.id:
            raise Forbidden("Unauthorized to delete this page")
        self._delete_aggregate(aggregate)

    def delete_pages_for_user(self, user_id: str) -> int:
        """Delete every page owned by a user, without caller checks."""
        deleted = 0
        page = self.db.find_page_by_user(user_id)
        while page:
            aggregate = self.db.get_page_aggregate(page.id)
            if aggregate:
                self._delete_aggregate(aggregate)
                deleted += 1
            page = self.db.find_page_by_user(user_id)
        return deleted

    def _delete_aggregate(self, aggregate: PageAggregate) -> None:
        self.db.delete_page(aggregate.page.id)
        # The database is authoritative; storage cleanup happens after commit.
        for url in aggregate.stored_file_urls():
            self._remove_stored_file(url)
        logger.info("Deleted legacy page %s", aggregate.page.id)

    def _replacement_media(
        self, current: PageAggregate, items: list[MediaItemIn], uploads: UploadBatch
    ) -> list[MediaItemRecord]:
        page_id = current.page.id
        existing_urls = {item.url for item in current.media_items}
        retained: set[str] = set()
        records = []
        for index, item in enumerate(items):
            if item.file is not None:
                url = uploads.store(MEDIA, item.file)
            elif item.url in existing_urls and item.url not in retained:
                url = item.url
                retained.add(url)
            else:
                logger.warning(
                    "Skipping mediaItems[%d] on page %s: no file and no unused existing url",
                    index,
                    page_id,
                )
                continue
            records.append(_media_record(page_id, item, url))
        return records

    def _remove_stored_file(self, url: str) -> None:
        path = self.storage.path_for_url(url)
        if not path:
            logger.warning("Not removing %s: not an object in the storage bucket", url)
            return
        try:
            self.storage.remove(path)
        except Exception:
            logger.warning("Failed to remove stored file %s", path, exc_info=True)
