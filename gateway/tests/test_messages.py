import unittest

from ticketchat.errors import AuthorizationError, MessageDeleted, NotFoundError, ValidationError
from ticketchat.messages import InMemoryMessageStore, SQLiteMessageStore
from ticketchat.sqlite_backend import SQLiteBackend

from .chat_fixtures import EVENT_ID, FakeClock, HOLDER, OTHER_EVENT_ID, SELLER, STRANGER


class MessageStoreContract:
    """Behaviour shared by every message store."""

    def make_store(self, clock):
        raise NotImplementedError

    def setUp(self):
        self.clock = FakeClock(start_ms=1_000)
        self.store = self.make_store(self.clock)

    def test_create_assigns_strictly_increasing_timestamps(self):
        first = self.store.create(EVENT_ID, HOLDER, "one")
        second = self.store.create(EVENT_ID, SELLER, "two")
        self.clock.advance(5)
        third = self.store.create(EVENT_ID, HOLDER, "three")

        self.assertEqual(first.created_at_ms, 1_000)
        self.assertEqual(second.created_at_ms, 1_001)
        self.assertEqual(third.created_at_ms, 6_000)
        self.assertEqual(first.user_address, HOLDER)
        self.assertIsNone(first.edited_at_ms)
        self.assertNotEqual(first.id, second.id)

    def test_clock_going_backwards_still_orders_messages(self):
        first = self.store.create(EVENT_ID, HOLDER, "one")
        self.clock.advance(-10)
        second = self.store.create(EVENT_ID, HOLDER, "two")

        self.assertEqual(second.created_at_ms, first.created_at_ms + 1)

    def test_timestamps_are_per_event(self):
        self.store.create(EVENT_ID, HOLDER, "one")
        other = self.store.create(OTHER_EVENT_ID, HOLDER, "elsewhere")

        self.assertEqual(other.created_at_ms, 1_000)

    def test_reply_must_target_same_event(self):
        target = self.store.create(OTHER_EVENT_ID, HOLDER, "elsewhere")

        with self.assertRaises(ValidationError):
            self.store.create(EVENT_ID, HOLDER, "reply", reply_to=target.id)
        with self.assertRaises(ValidationError):
            self.store.create(EVENT_ID, HOLDER, "reply", reply_to="6f1c2d3e-0000-4000-8000-000000000000")

        local = self.store.create(EVENT_ID, HOLDER, "root")
        reply = self.store.create(EVENT_ID, SELLER, "reply", reply_to=local.id)
        self.assertEqual(reply.reply_to, local.id)

    def test_edit_by_author_sets_edited_at(self):
        message = self.store.create(EVENT_ID, HOLDER, "draft")
        self.clock.advance(2)

        edited = self.store.edit(message.id, HOLDER.upper().replace("0X", "0x"), "final")

        self.assertEqual(edited.content, "final")
        self.assertEqual(edited.edited_at_ms, 3_000)
        self.assertEqual(edited.created_at_ms, message.created_at_ms)
        self.assertEqual(self.store.get(message.id).content, "final")

    def test_only_author_can_edit_or_delete_for_everyone(self):
        message = self.store.create(EVENT_ID, HOLDER, "mine")

        with self.assertRaisesRegex(AuthorizationError, "edit your own"):
            self.store.edit(message.id, SELLER, "hijack")
        with self.assertRaisesRegex(AuthorizationError, "delete your own"):
            self.store.delete_for_everyone(message.id, SELLER)

    def test_unknown_message(self):
        missing = "6f1c2d3e-0000-4000-8000-000000000000"
        with self.assertRaises(NotFoundError):
            self.store.edit(missing, HOLDER, "x")
        with self.assertRaises(NotFoundError):
            self.store.delete_for_me(missing, HOLDER)
        self.assertIsNone(self.store.get(missing))

    def test_delete_for_everyone_is_terminal_and_idempotent(self):
        message = self.store.create(EVENT_ID, HOLDER, "oops")
        self.clock.advance(1)

        deleted = self.store.delete_for_everyone(message.id, HOLDER)
        self.clock.advance(1)
        again = self.store.delete_for_everyone(message.id, HOLDER)

        self.assertEqual(deleted.content, "")
        self.assertEqual(deleted.deleted_at_ms, 2_000)
        self.assertEqual(again.deleted_at_ms, 2_000)
        with self.assertRaises(MessageDeleted):
            self.store.edit(message.id, HOLDER, "revive")

    def test_delete_for_me_hides_only_for_that_viewer(self):
        message = self.store.create(EVENT_ID, HOLDER, "hello")

        self.store.delete_for_me(message.id, SELLER)
        again = self.store.delete_for_me(message.id, SELLER)

        self.assertEqual(again.deleted_for, frozenset({SELLER}))
        seller_page, _ = self.store.list_page(EVENT_ID, SELLER)
        stranger_page, _ = self.store.list_page(EVENT_ID, STRANGER)
        self.assertEqual(seller_page, [])
        self.assertEqual([m.id for m in stranger_page], [message.id])
        self.assertEqual(stranger_page[0].content, "hello")

    def test_tombstones_stay_in_pages(self):
        message = self.store.create(EVENT_ID, HOLDER, "gone soon")
        self.store.delete_for_everyone(message.id, HOLDER)

        page, _ = self.store.list_page(EVENT_ID, STRANGER)

        self.assertEqual(len(page), 1)
        self.assertTrue(page[0].is_deleted)
        self.assertEqual(page[0].content, "")

    def test_pagination_walks_backwards_in_full_pages(self):
        for index in range(120):
            self.store.create(EVENT_ID, HOLDER, f"m{index}")

        newest, has_more = self.store.list_page(EVENT_ID, STRANGER)
        self.assertEqual(len(newest), 50)
        self.assertTrue(has_more)
        self.assertEqual(newest[0].content, "m70")
        self.assertEqual(newest[-1].content, "m119")

        middle, has_more = self.store.list_page(EVENT_ID, STRANGER, before=newest[0].created_at_ms)
        self.assertEqual(len(middle), 50)
        self.assertTrue(has_more)
        self.assertEqual(middle[0].content, "m20")
        self.assertEqual(middle[-1].content, "m69")

        oldest, has_more = self.store.list_page(EVENT_ID, STRANGER, before=middle[0].created_at_ms)
        self.assertEqual(len(oldest), 20)
        self.assertFalse(has_more)
        self.assertEqual(oldest[0].content, "m0")

    def test_has_more_uses_the_filtered_count(self):
        created = [self.store.create(EVENT_ID, HOLDER, f"m{index}") for index in range(60)]
        self.store.delete_for_me(created[-1].id, SELLER)

        page, has_more = self.store.list_page(EVENT_ID, SELLER)

        self.assertEqual(len(page), 49)
        self.assertFalse(has_more)
        self.assertEqual(page[-1].content, "m58")

    def test_last_message_and_get_many(self):
        self.assertIsNone(self.store.last_message(EVENT_ID))
        first = self.store.create(EVENT_ID, HOLDER, "first")
        last = self.store.create(EVENT_ID, SELLER, "last")

        self.assertEqual(self.store.last_message(EVENT_ID).id, last.id)
        found = self.store.get_many([first.id, last.id, "6f1c2d3e-0000-4000-8000-000000000000"])
        self.assertEqual(set(found), {first.id, last.id})

    def test_api_dict_shape(self):
        message = self.store.create(EVENT_ID, HOLDER, "hi")
        self.store.delete_for_me(message.id, SELLER)
        message = self.store.get(message.id)

        public = message.to_api_dict()
        self.assertNotIn("deleted_for", public)
        self.assertEqual(public["created_at"], 1_000)
        self.assertEqual(message.to_api_dict(include_deleted_for=True)["deleted_for"], [SELLER])


class InMemoryMessageStoreTests(MessageStoreContract, unittest.TestCase):
    def make_store(self, clock):
        return InMemoryMessageStore(now_func=clock.now)


class SQLiteMessageStoreTests(MessageStoreContract, unittest.TestCase):
    def make_store(self, clock):
        self.backend = SQLiteBackend(":memory:")
        self.addCleanup(self.backend.close)
        return SQLiteMessageStore(self.backend, now_func=clock.now)

    def test_unique_timestamp_per_event_survives_reopen(self):
        first = self.store.create(EVENT_ID, HOLDER, "one")
        reopened = SQLiteMessageStore(self.backend, now_func=lambda: 0)

        second = reopened.create(EVENT_ID, HOLDER, "two")

        self.assertEqual(second.created_at_ms, first.created_at_ms + 1)


if __name__ == "__main__":
    unittest.main()
