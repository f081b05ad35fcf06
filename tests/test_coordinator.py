import asyncio
import itertools
import threading
import unittest

from fake_s3 import FakeS3Client, client_error, make_profile, transient_error
from s3nav.client import SignedRequestClient
from s3nav.coordinator import ListingCoordinator
from s3nav.errors import AccessDeniedError, OperationCancelledError, PartialFailureError, UnknownRemoteError
from s3nav.models import FetchState, FolderEntry, ObjectEntry
from s3nav.profiles import ProfileRegistry
from s3nav.settings import AppSettings
from s3nav.tree import PathTree

KEYS = {"a/x.txt": b"x", "a/y.txt": b"yy", "b.txt": b"bbb"}
TIMEOUT = 5


class ListingCoordinatorTests(unittest.TestCase):
    def setUp(self):
        self.fake = FakeS3Client(KEYS)
        self.coordinator = self._coordinator()

    def _coordinator(self, page_size=1000):
        settings = AppSettings(page_size=page_size, backoff_base=0.0, backoff_max=0.0)
        client = SignedRequestClient(settings, client_factory=lambda *_, **__: self.fake)
        registry = ProfileRegistry([make_profile("r1")])
        return ListingCoordinator(registry, client, PathTree())

    def test_lists_root_and_folder(self):
        async def scenario():
            root = await self.coordinator.request_listing("r1", "").wait()
            folder = await self.coordinator.request_listing("r1", "a/").wait()
            return root, folder

        root, folder = asyncio.run(scenario())

        self.assertEqual(FetchState.FRESH, root.state)
        self.assertEqual([FolderEntry("a/"), "b.txt"], [root.entries[0], root.entries[1].key])
        self.assertIsInstance(root.entries[1], ObjectEntry)
        self.assertEqual(["a/x.txt", "a/y.txt"], [entry.key for entry in folder.entries])
        self.assertTrue(all(isinstance(entry, ObjectEntry) for entry in folder.entries))

    def test_concurrent_requests_share_one_fetch(self):
        self.coordinator = self._coordinator(page_size=1)

        async def scenario():
            first = self.coordinator.request_listing("r1", "")
            second = self.coordinator.request_listing("r1", "")
            self.assertIs(first, second)
            results = await asyncio.gather(first.wait(), second.wait())
            third = self.coordinator.request_listing("r1", "")
            self.assertTrue(third.done())
            return results, await third.wait()

        (first, second), third = asyncio.run(scenario())

        self.assertEqual(first, second)
        self.assertEqual(first.entries, third.entries)
        tokens = [call.get("ContinuationToken") for call in self.fake.calls_for("list_objects_v2")]
        self.assertEqual([None, "tok-1"], tokens)

    def test_merged_listing_is_independent_of_page_size(self):
        self.fake.objects.update({f"k{i:02d}": b"" for i in range(7)})
        self.fake.objects.update({f"d{i}/file": b"" for i in range(3)})
        listings = []
        for page_size in (1, 2, 3, 1000):
            coordinator = self._coordinator(page_size=page_size)
            snapshot = asyncio.run(self._list(coordinator, ""))
            listings.append(snapshot.entries)

        keys = [entry.key for entry in listings[0]]
        self.assertEqual(sorted(keys), keys)
        for entries in listings[1:]:
            self.assertEqual(listings[0], entries)

    def test_failed_page_marks_node_failed_and_next_access_refetches(self):
        self.coordinator = self._coordinator(page_size=1)
        self.fake.failures["list_objects_v2"] = [None] + [transient_error() for _ in range(3)]

        async def scenario():
            handle = self.coordinator.request_listing("r1", "")
            with self.assertRaises(PartialFailureError) as ctx:
                await handle.wait()
            failed = self.coordinator.tree.get_cached("r1", "")
            retried = await self.coordinator.request_listing("r1", "").wait()
            return ctx.exception, failed, retried

        error, failed, retried = asyncio.run(scenario())

        self.assertEqual(1, error.pages_applied)
        self.assertEqual(FetchState.FAILED, failed.state)
        self.assertIs(error, failed.error)
        self.assertEqual(["a/"], [entry.key for entry in failed.entries])
        self.assertEqual(FetchState.FRESH, retried.state)
        self.assertEqual(["a/", "b.txt"], [entry.key for entry in retried.entries])

    def test_access_denied_is_surfaced_without_retry(self):
        self.fake.failures["list_objects_v2"] = [client_error("AccessDenied", 403, "ListObjectsV2")]

        with self.assertRaises(AccessDeniedError):
            asyncio.run(self._list(self.coordinator, ""))

        self.assertEqual(1, len(self.fake.calls_for("list_objects_v2")))
        self.assertEqual(FetchState.FAILED, self.coordinator.tree.get_cached("r1", "").state)

    def test_non_transient_error_after_first_page_is_partial_failure(self):
        self.coordinator = self._coordinator(page_size=1)
        self.fake.failures["list_objects_v2"] = [None, client_error("AccessDenied", 403, "ListObjectsV2")]

        with self.assertRaises(PartialFailureError) as ctx:
            asyncio.run(self._list(self.coordinator, ""))

        self.assertEqual(1, ctx.exception.pages_applied)
        self.assertIsInstance(ctx.exception.cause, AccessDeniedError)
        failed = self.coordinator.tree.get_cached("r1", "")
        self.assertEqual(FetchState.FAILED, failed.state)
        self.assertEqual(["a/"], [entry.key for entry in failed.entries])

    def test_cancel_during_only_page_leaves_node_stale(self):
        holder = {}
        self.fake.hooks["list_objects_v2"] = lambda _kwargs: holder["handle"].cancel()

        async def scenario():
            holder["handle"] = self.coordinator.request_listing("r1", "")
            with self.assertRaises(OperationCancelledError):
                await holder["handle"].wait()
            return self.coordinator.tree.get_cached("r1", "")

        snapshot = asyncio.run(scenario())

        self.assertEqual(1, len(self.fake.calls_for("list_objects_v2")))
        self.assertEqual(FetchState.STALE, snapshot.state)
        self.assertEqual(["a/", "b.txt"], [entry.key for entry in snapshot.entries])

    def test_fetch_outlived_by_clear_remote_does_not_touch_new_fetch(self):
        started = [threading.Event(), threading.Event()]
        release = [threading.Event(), threading.Event()]
        calls = itertools.count()

        def release_all():
            for event in release:
                event.set()

        def gate(_kwargs):
            index = next(calls)
            started[index].set()
            release[index].wait(TIMEOUT)

        self.addCleanup(release_all)
        self.fake.hooks["list_objects_v2"] = gate

        async def scenario():
            old = self.coordinator.request_listing("r1", "")
            self.assertTrue(await asyncio.to_thread(started[0].wait, TIMEOUT))
            self.coordinator.clear_remote("r1")
            new = self.coordinator.request_listing("r1", "")
            self.assertIsNot(old, new)
            self.assertTrue(await asyncio.to_thread(started[1].wait, TIMEOUT))

            release[0].set()
            with self.assertRaises(OperationCancelledError):
                await old.wait()
            during = self.coordinator.tree.get_cached("r1", "")

            release[1].set()
            return during, await new.wait()

        during, snapshot = asyncio.run(scenario())

        self.assertEqual(FetchState.FETCHING, during.state)
        self.assertEqual((), during.entries)
        self.assertEqual(FetchState.FRESH, snapshot.state)
        self.assertEqual(["a/", "b.txt"], [entry.key for entry in snapshot.entries])
        self.assertIs(snapshot, self.coordinator.tree.get_cached("r1", ""))

    def test_cancel_stops_pagination_and_keeps_applied_pages(self):
        self.coordinator = self._coordinator(page_size=1)
        holder = {}
        self.fake.hooks["list_objects_v2"] = lambda _kwargs: holder["handle"].cancel()

        async def scenario():
            holder["handle"] = self.coordinator.request_listing("r1", "")
            with self.assertRaises(OperationCancelledError):
                await holder["handle"].wait()
            return self.coordinator.tree.get_cached("r1", "")

        snapshot = asyncio.run(scenario())

        self.assertEqual(1, len(self.fake.calls_for("list_objects_v2")))
        self.assertEqual(FetchState.STALE, snapshot.state)
        self.assertEqual(["a/"], [entry.key for entry in snapshot.entries])

    def test_invalidate_triggers_refetch_that_replaces_entries(self):
        async def scenario():
            await self.coordinator.request_listing("r1", "a/").wait()
            self.fake.objects["a/new.txt"] = b"n"
            del self.fake.objects["a/x.txt"]
            cached = await self.coordinator.request_listing("r1", "a/").wait()
            self.coordinator.invalidate("r1", "a/")
            refreshed = await self.coordinator.request_listing("r1", "a/").wait()
            return cached, refreshed

        cached, refreshed = asyncio.run(scenario())

        self.assertEqual(["a/x.txt", "a/y.txt"], [entry.key for entry in cached.entries])
        self.assertEqual(["a/new.txt", "a/y.txt"], [entry.key for entry in refreshed.entries])
        self.assertEqual(2, len(self.fake.calls_for("list_objects_v2")))

    def test_force_refetches_fresh_node(self):
        async def scenario():
            await self.coordinator.request_listing("r1", "").wait()
            return await self.coordinator.request_listing("r1", "", force=True).wait()

        snapshot = asyncio.run(scenario())

        self.assertEqual(FetchState.FRESH, snapshot.state)
        self.assertEqual(2, len(self.fake.calls_for("list_objects_v2")))

    def test_unknown_remote_is_rejected(self):
        async def scenario():
            self.coordinator.request_listing("missing", "")

        with self.assertRaises(UnknownRemoteError):
            asyncio.run(scenario())

    def test_clear_remote_cancels_and_purges(self):
        async def scenario():
            await self.coordinator.request_listing("r1", "").wait()
            self.coordinator.clear_remote("r1")
            return self.coordinator.tree.get_cached("r1", "")

        self.assertIsNone(asyncio.run(scenario()))

    @staticmethod
    async def _list(coordinator, prefix):
        return await coordinator.request_listing("r1", prefix).wait()


if __name__ == "__main__":
    unittest.main()
