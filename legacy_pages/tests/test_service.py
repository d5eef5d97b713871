import unittest
from datetime import date

from legacy_pages.db import InMemoryDbClient
from legacy_pages.errors import AuthenticationRequired, Conflict, Forbidden, NotFound
from legacy_pages.schemas import (
    FileUpload,
    GeneralKnowledgeIn,
    InsightIn,
    MediaItemIn,
    PageFields,
    PageSubmission,
)
from legacy_pages.service import PageService
from legacy_pages.storage import InMemoryStorageClient


class BrokenDb(InMemoryDbClient):
    def create_page(self, aggregate):
        raise RuntimeError("database unavailable")


class FailingReplaceDb(InMemoryDbClient):
    def replace_page(self, update):
        raise RuntimeError("database unavailable")


class UndeletableStorage(InMemoryStorageClient):
    def remove(self, path):
        raise RuntimeError("storage unavailable")


def upload(name="photo.jpg"):
    return FileUpload(filename=name, content_type="image/jpeg", data=b"bytes")


def submission(slug="jane-doe", page_type="memorial", **kwargs):
    fields = PageFields(
        page_type=page_type,
        slug=slug,
        honouree_name="Jane Doe",
        date_of_birth=date(1950, 4, 1),
        date_of_passing=date(2023, 9, 12) if page_type == "memorial" else None,
    )
    return PageSubmission(fields=fields, general_knowledge=GeneralKnowledgeIn(), **kwargs)


def media(file=None, url=None):
    return MediaItemIn(type="image", date_taken=date(2000, 1, 1), file=file, url=url)


class PageServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        self.service = PageService(self.db, self.storage)
        self.user = self.db.upsert_user("user_1", name="John", email="john@example.com")
        self.db.upsert_user("user_2", name="Mary", email="mary@example.com")

    def test_resolve_user(self):
        with self.assertRaises(AuthenticationRequired):
            self.service.resolve_user(None)
        with self.assertRaises(NotFound):
            self.service.resolve_user("user_missing")
        self.assertEqual(self.service.resolve_user("user_1").id, self.user.id)

    def test_failed_create_discards_uploads(self):
        service = PageService(BrokenDb(), self.storage)
        service.db.upsert_user("user_1", name="John", email="john@example.com")

        with self.assertRaises(RuntimeError):
            service.create_page(
                "user_1",
                submission(cover_photo=upload(), media_items=[media(file=upload("a.jpg"))]),
            )
        self.assertEqual(self.storage.stored_objects, {})

    def test_failed_replace_discards_new_uploads(self):
        db = FailingReplaceDb()
        db.upsert_user("user_1", name="John", email="john@example.com")
        service = PageService(db, self.storage)
        page_id = service.create_page(
            "user_1",
            submission(cover_photo=upload("old.jpg"), media_items=[media(file=upload("a.jpg"))]),
        )
        original_objects = dict(self.storage.stored_objects)
        original_cover = service.get_page(page_id).page.cover_photo

        with self.assertRaises(RuntimeError):
            service.replace_page(
                "user_1",
                page_id,
                submission(
                    cover_photo=upload("new.jpg"), media_items=[media(file=upload("b.jpg"))]
                ),
            )

        self.assertEqual(self.storage.stored_objects, original_objects)
        self.assertEqual(service.get_page(page_id).page.cover_photo, original_cover)

    def test_create_conflicts_do_not_upload(self):
        self.service.create_page("user_1", submission())
        with self.assertRaises(Conflict):
            self.service.create_page("user_2", submission(cover_photo=upload()))
        with self.assertRaises(Conflict):
            self.service.create_page("user_1", submission(slug="other", cover_photo=upload()))
        self.assertEqual(self.storage.stored_objects, {})

    def test_replace_skips_media_without_file_or_known_url(self):
        page_id = self.service.create_page(
            "user_1", submission(media_items=[media(file=upload("a.jpg"))])
        )
        existing_url = self.service.get_page(page_id).media_items[0].url

        self.service.replace_page(
            "user_1",
            page_id,
            submission(
                media_items=[
                    media(url=existing_url),
                    media(url="https://elsewhere.example/x.jpg"),
                    media(),
                ]
            ),
        )

        aggregate = self.service.get_page(page_id)
        self.assertEqual([item.url for item in aggregate.media_items], [existing_url])
        self.assertEqual(len(self.storage.stored_objects), 1)

    def test_replace_keeps_a_repeated_existing_url_once(self):
        page_id = self.service.create_page(
            "user_1", submission(media_items=[media(file=upload("a.jpg"))])
        )
        existing_url = self.service.get_page(page_id).media_items[0].url

        self.service.replace_page(
            "user_1",
            page_id,
            submission(media_items=[media(url=existing_url), media(url=existing_url)]),
        )

        aggregate = self.service.get_page(page_id)
        self.assertEqual([item.url for item in aggregate.media_items], [existing_url])

        self.service.delete_page("user_1", page_id)
        self.assertEqual(self.storage.stored_objects, {})

    def test_replace_always_upserts_general_knowledge(self):
        page_id = self.service.create_page("user_1", submission())
        self.assertIsNone(self.service.get_page(page_id).general_knowledge)

        updated = submission()
        updated.general_knowledge = GeneralKnowledgeIn(personality="Warm")
        self.service.replace_page("user_1", page_id, updated)
        self.assertEqual(self.service.get_page(page_id).general_knowledge.personality, "Warm")

    def test_replace_creates_missing_memorial_details(self):
        page_id = self.service.create_page("user_1", submission(page_type="biography"))
        self.assertIsNone(self.service.get_page(page_id).memorial_details)

        self.service.replace_page("user_1", page_id, submission())
        details = self.service.get_page(page_id).memorial_details
        self.assertIsNotNone(details)
        self.assertIsNone(details.eulogy)

    def test_delete_page_checks_owner(self):
        page_id = self.service.create_page(
            "user_1", submission(insights=[InsightIn(message="Kind")])
        )
        with self.assertRaises(Forbidden):
            self.service.delete_page("user_2", page_id)
        with self.assertRaises(NotFound):
            self.service.delete_page("user_1", "missing")
        self.assertIsNotNone(self.service.get_page(page_id))

    def test_delete_succeeds_when_file_removal_fails(self):
        service = PageService(self.db, UndeletableStorage())
        page_id = service.create_page("user_1", submission(cover_photo=upload()))

        service.delete_page("user_1", page_id)

        with self.assertRaises(NotFound):
            service.get_page(page_id)

    def test_delete_pages_for_user(self):
        self.service.create_page("user_1", submission(cover_photo=upload()))
        self.assertEqual(self.service.delete_pages_for_user(self.user.id), 1)
        self.assertIsNone(self.db.find_page_by_user(self.user.id))
        self.assertEqual(self.storage.stored_objects, {})
        self.assertEqual(self.service.delete_pages_for_user(self.user.id), 0)

    def test_own_page(self):
        self.assertIsNone(self.service.get_own_page("user_1"))
        page_id = self.service.create_page("user_1", submission())
        self.assertEqual(self.service.get_own_page("user_1").id, page_id)
        self.assertEqual(self.service.get_own_page("user_1", True).page.id, page_id)


if __name__ == "__main__":
    unittest.main()
