import asyncio
import sqlite3

import pytest
import pytest_asyncio

from config import config
from errors import SourceError, ItemNotFoundError
from ingest import RankTracker, StoryIngestor, prune_old_stories
from models import DatabaseQueue
from records import Item, Author, StoryRecord
from summarizer import SummaryQueue


def story(item_id, score=50, url=None, kids=None, by="author"):
    return {
        "id": item_id,
        "type": "story",
        "title": f"Story {item_id}",
        "url": url if url is not None else f"https://example.com/{item_id}",
        "score": score,
        "by": by,
        "descendants": len(kids or []),
        "time": 1_700_000_000 + item_id,
        "kids": kids or [],
    }


def comment(item_id, parent, kids=None, by="commenter", **extra):
    payload = {
        "id": item_id,
        "type": "comment",
        "parent": parent,
        "text": f"comment {item_id}",
        "by": by,
        "time": 1_700_000_000,
        "kids": kids or [],
    }
    payload.update(extra)
    return payload


class FakeHN:
    """In-memory stand-in for HackerNewsClient."""

    def __init__(self, items=(), users=None, top=(), new=(), failing=(), failing_users=()):
        self.items = {i["id"]: i for i in items}
        self.users = users or {}
        self.top = top
        self.new = new
        self.failing = set(failing)
        self.failing_users = set(failing_users)
        self.fetched = []
        self.fetched_users = []

    async def fetch_item(self, item_id):
        self.fetched.append(item_id)
        if item_id in self.failing:
            raise SourceError(f"item {item_id} timed out")
        payload = self.items.get(item_id)
        if payload is None:
            raise ItemNotFoundError("item", item_id)
        return Item.from_payload(payload)

    async def fetch_user(self, username):
        self.fetched_users.append(username)
        if username in self.failing_users:
            raise SourceError(f"user {username} timed out")
        return Author(username=username, created_at=1, karma=self.users.get(username, 1))

    async def fetch_top_ids(self):
        if self.top is None:
            raise SourceError("topstories unavailable")
        return list(self.top)

    async def fetch_new_ids(self):
        if self.new is None:
            raise SourceError("newstories unavailable")
        return list(self.new)


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "ingest.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


def _rows(db, sql):
    cursor = db.conn.cursor()
    cursor.execute(sql)
    rows = [tuple(r) for r in cursor.fetchall()]
    cursor.close()
    return rows


async def run_once(hn, db, summary_queue=None, workers=1):
    tracker = RankTracker(hn, db)
    ids, rank_map = await tracker.discover()
    ingestor = StoryIngestor(hn, db, summary_queue, workers=workers)
    stats = await ingestor.run_cycle(ids, rank_map)
    return ids, rank_map, stats


def test_order_ids_ranked_then_newest_unranked():
    rank_map = RankTracker.build_rank_map([30, 10, 20])
    ordered = RankTracker.order_ids([30, 10, 20], [20, 5, 40, 7], rank_map, limit=10)
    assert ordered == [30, 10, 20, 40, 7, 5]
    assert RankTracker.order_ids([30, 10, 20], [40], rank_map, limit=2) == [30, 10]


def test_build_rank_map_keeps_first_position():
    assert RankTracker.build_rank_map([4, 8, 4]) == {4: 1, 8: 2}


@pytest.mark.asyncio
async def test_discovery_end_to_end(db):
    hn = FakeHN(items=[story(i) for i in (5, 3, 9, 7)], top=[5, 3, 9], new=[9, 7])

    ids, rank_map, stats = await run_once(hn, db)

    assert ids == [5, 3, 9, 7]
    assert rank_map == {5: 1, 3: 2, 9: 3}
    assert hn.fetched == [5, 3, 9, 7]
    assert _rows(db, "SELECT id, rank FROM stories ORDER BY id") == [(3, 2), (5, 1), (7, None), (9, 3)]
    assert stats["stories"] == 4


@pytest.mark.asyncio
async def test_rank_cleared_when_story_leaves_top_list(db):
    hn = FakeHN(items=[story(i) for i in (5, 3, 9, 7)], top=[5, 3, 9], new=[9, 7])
    await run_once(hn, db)

    hn.top = [3]
    hn.new = []
    await run_once(hn, db)

    ranks = dict(_rows(db, "SELECT id, rank FROM stories"))
    assert ranks == {3: 1, 5: None, 7: None, 9: None}


@pytest.mark.asyncio
async def test_top_list_failure_leaves_ranks_untouched(db):
    await db.execute('upsert_story', story=StoryRecord(
        id=5, title="old", url="", score=1, author="a", descendant_count=0, posted_at=1, rank=1))
    hn = FakeHN(items=[story(7)], top=None, new=[7])

    ids, rank_map, _ = await run_once(hn, db)

    assert ids == [7]
    assert rank_map is None
    assert dict(_rows(db, "SELECT id, rank FROM stories")) == {5: 1, 7: None}


@pytest.mark.asyncio
async def test_top_list_failure_keeps_rank_of_restored_stories(db):
    for story_id, rank in ((5, 1), (6, 2)):
        await db.execute('upsert_story', story=StoryRecord.from_item(Item.from_payload(story(story_id)), rank))
    hn = FakeHN(items=[story(6, score=77), story(8)], top=None, new=[6, 8])

    await run_once(hn, db)

    assert dict(_rows(db, "SELECT id, rank FROM stories")) == {5: 1, 6: 2, 8: None}
    # the other fields are still refreshed
    assert _rows(db, "SELECT score FROM stories WHERE id = 6") == [(77,)]


@pytest.mark.asyncio
async def test_comment_tree_with_cycles_and_dead_nodes(db):
    items = [
        story(1, kids=[2, 3, 2]),
        comment(2, 1, kids=[4, 2]),
        comment(4, 2, kids=[1, 2]),
        comment(3, 1, kids=[5, 7]),
        comment(5, 3, kids=[6], deleted=True),
        comment(6, 5),
        comment(7, 3, dead=True),
    ]
    hn = FakeHN(items=items, top=[1], new=[])

    await run_once(hn, db)

    rows = _rows(db, "SELECT id, story_id, parent_id FROM comments ORDER BY id")
    assert rows == [(2, 1, None), (3, 1, None), (4, 1, 2)]
    # depth first, siblings in source order, every ID fetched once
    assert hn.fetched == [1, 2, 4, 3, 5, 7]


@pytest.mark.asyncio
async def test_failed_comment_upsert_skips_subtree(tmp_path):
    class FlakyDB(DatabaseQueue):
        def upsert_comment(self, comment):
            if comment.id == 2:
                raise sqlite3.OperationalError("database is locked")
            return super().upsert_comment(comment)

    db = FlakyDB(str(tmp_path / "flaky.db"))
    await db.start()
    try:
        items = [story(1, kids=[2, 3]), comment(2, 1, kids=[4]), comment(4, 2), comment(3, 1)]
        hn = FakeHN(items=items, top=[1], new=[])
        await run_once(hn, db)

        assert _rows(db, "SELECT id FROM comments") == [(3,)]
        assert 4 not in hn.fetched
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failed_item_fetch_does_not_abort_cycle(db):
    hn = FakeHN(items=[story(1), story(3)], top=[1, 2, 3], new=[], failing=[2])

    _, _, stats = await run_once(hn, db, workers=2)

    assert {r[0] for r in _rows(db, "SELECT id FROM stories")} == {1, 3}
    assert stats["failed"] == 1


@pytest.mark.asyncio
async def test_non_story_items_are_ignored(db):
    job = story(8)
    job["type"] = "job"
    hn = FakeHN(items=[job], top=[8], new=[])

    await run_once(hn, db)

    assert _rows(db, "SELECT COUNT(*) FROM stories") == [(0,)]


@pytest.mark.asyncio
async def test_authors_are_upserted_once_and_failures_are_contained(db):
    items = [
        story(1, kids=[2, 3], by="alice"),
        comment(2, 1, by="ghost"),
        comment(3, 1, by="alice"),
    ]
    hn = FakeHN(items=items, users={"alice": 99}, top=[1], new=[], failing_users=["ghost"])

    await run_once(hn, db)

    assert _rows(db, "SELECT username, karma FROM users") == [("alice", 99)]
    assert sorted(hn.fetched_users) == ["alice", "ghost"]
    assert _rows(db, "SELECT COUNT(*) FROM comments") == [(2,)]


@pytest.mark.asyncio
async def test_skip_summarized_stories_outside_fresh_ranks(db, monkeypatch):
    monkeypatch.setattr(config, "FRESH_RANK_LIMIT", 2)
    hn = FakeHN(items=[story(i) for i in (10, 11, 12, 13)], top=[10, 11, 12], new=[13])
    await run_once(hn, db)
    for story_id in (10, 12, 13):
        await db.execute('update_story_summary_and_topics', story_id=story_id, summary="s", topics=["t"])

    hn.fetched.clear()
    _, _, stats = await run_once(hn, db)

    # 10 is summarized but still near the top, 11 has no summary
    assert hn.fetched == [10, 11]
    assert stats["skipped"] == 2


@pytest.mark.asyncio
async def test_summary_enqueue_rules(db):
    items = [
        story(1, score=11),
        story(2, score=10),
        story(3, score=500, url=""),
        story(4, score=200),
        story(5, score=200),
    ]
    hn = FakeHN(items=items, top=[1, 2, 3, 4, 5], new=[])
    for story_id in (4, 5):
        await db.execute('upsert_story', story=StoryRecord.from_item(Item.from_payload(items[story_id - 1])))
    await db.execute('update_story_summary_and_topics', story_id=4, summary="done", topics=["x"])
    await db.execute('update_story_summary_and_topics', story_id=5, summary="done", topics=[])

    queue = SummaryQueue(db, fetcher=None, maxsize=10)
    await run_once(hn, db, summary_queue=queue)

    jobs = []
    while not queue.queue.empty():
        jobs.append(queue.queue.get_nowait())
    assert [(j.story_id, j.backfill_topics) for j in jobs] == [(1, False), (5, True)]


@pytest.mark.asyncio
async def test_full_summary_queue_drops_without_blocking(db):
    hn = FakeHN(items=[story(i, score=100) for i in (1, 2, 3)], top=[1, 2, 3], new=[])
    queue = SummaryQueue(db, fetcher=None, maxsize=1)

    _, _, stats = await run_once(hn, db, summary_queue=queue)

    assert queue.queue.qsize() == 1
    assert queue.stats["dropped"] == 2
    assert stats["enqueued"] == 1
    assert stats["stories"] == 3


@pytest.mark.asyncio
async def test_prune_after_cycle(db):
    hn = FakeHN(items=[story(i) for i in range(1, 6)], top=[1, 2], new=[3, 4, 5])
    await run_once(hn, db)

    deleted = await prune_old_stories(db, keep_count=3)

    assert deleted == 2
    assert {r[0] for r in _rows(db, "SELECT id FROM stories")} == {1, 2, 5}


@pytest.mark.asyncio
async def test_stop_event_interrupts_comment_walk(db):
    stop = asyncio.Event()

    class StoppingHN(FakeHN):
        async def fetch_item(self, item_id):
            if item_id == 102:
                stop.set()
            return await super().fetch_item(item_id)

    kids = list(range(101, 151))
    hn = StoppingHN(items=[story(1, kids=kids)] + [comment(k, 1) for k in kids], top=[1], new=[])
    ingestor = StoryIngestor(hn, db, workers=1, stop_event=stop)

    await ingestor.run_cycle([1], {1: 1})

    assert hn.fetched == [1, 101, 102]
    assert _rows(db, "SELECT id FROM comments ORDER BY id") == [(101,), (102,)]
