import pytest
import pytest_asyncio

from errors import StorageError
from models import DatabaseQueue
from records import StoryRecord, CommentRecord, UserRecord


def _story(story_id, rank=None, posted_at=None, score=20, url="https://example.com/a"):
    return StoryRecord(
        id=story_id,
        title=f"Story {story_id}",
        url=url,
        score=score,
        author="pg",
        descendant_count=3,
        posted_at=posted_at if posted_at is not None else 1_700_000_000 + story_id,
        rank=rank,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


def _rows(db, sql, params=()):
    cursor = db.conn.cursor()
    cursor.execute(sql, params)
    rows = [tuple(r) for r in cursor.fetchall()]
    cursor.close()
    return rows


@pytest.mark.asyncio
async def test_upserts_are_idempotent(db):
    story = _story(1, rank=4)
    comment = CommentRecord(id=10, story_id=1, parent_id=None, text="hi", author="dang", posted_at=5)
    user = UserRecord(username="dang", created_at=1, karma=42, about="mod", submitted_ids=[1, 2])

    for _ in range(2):
        assert await db.execute('upsert_story', story=story)
        assert await db.execute('upsert_comment', comment=comment)
        assert await db.execute('upsert_user', user=user)

    assert _rows(db, "SELECT id, title, score, rank FROM stories") == [(1, "Story 1", 20, 4)]
    assert _rows(db, "SELECT id, story_id, parent_id, text FROM comments") == [(10, 1, None, "hi")]
    assert _rows(db, "SELECT username, karma, submitted FROM users") == [("dang", 42, "[1, 2]")]


@pytest.mark.asyncio
async def test_upsert_story_overwrites_mutable_fields(db):
    await db.execute('upsert_story', story=_story(1, rank=2, score=15))
    await db.execute('update_story_summary_and_topics', story_id=1, summary="- a", topics=["x"])
    await db.execute('upsert_story', story=_story(1, rank=None, score=99))

    story = await db.execute('get_story', story_id=1)
    assert story['score'] == 99
    assert story['rank'] is None
    # summary is owned by the summarizer and survives re-ingestion
    assert story['summary'] == "- a"
    assert story['topics'] == ["x"]


@pytest.mark.asyncio
async def test_get_story_missing_returns_none(db):
    assert await db.execute('get_story', story_id=404) is None


@pytest.mark.asyncio
async def test_rank_clear_and_update(db):
    for story_id, rank in ((1, 1), (2, 2), (3, None)):
        await db.execute('upsert_story', story=_story(story_id, rank=rank))

    cleared = await db.execute('clear_ranks_not_in', ids=[2, 3, 99])
    assert cleared == 1
    updated = await db.execute('update_ranks', rank_map={2: 1, 3: 2, 99: 3})
    assert updated == 2

    assert _rows(db, "SELECT id, rank FROM stories ORDER BY id") == [(1, None), (2, 1), (3, 2)]
    # unknown IDs are not inserted by rank updates
    assert await db.execute('get_story', story_id=99) is None


@pytest.mark.asyncio
async def test_clear_ranks_with_empty_list_is_noop(db):
    await db.execute('upsert_story', story=_story(1, rank=1))
    assert await db.execute('clear_ranks_not_in', ids=[]) == 0
    assert _rows(db, "SELECT rank FROM stories") == [(1,)]


@pytest.mark.asyncio
async def test_stories_status_map(db):
    await db.execute('upsert_story', story=_story(1))
    await db.execute('upsert_story', story=_story(2))
    await db.execute('update_story_summary_and_topics', story_id=2, summary="done", topics=[])

    status = await db.execute('get_stories_status', ids=[1, 2, 3])
    assert status == {1: False, 2: True}
    assert await db.execute('get_stories_status', ids=[]) == {}


@pytest.mark.asyncio
async def test_update_topics_keeps_summary(db):
    await db.execute('upsert_story', story=_story(1))
    await db.execute('update_story_summary_and_topics', story_id=1, summary="keep me", topics=[])
    assert await db.execute('update_story_topics', story_id=1, topics=["rust", "db"])

    story = await db.execute('get_story', story_id=1)
    assert story['summary'] == "keep me"
    assert story['topics'] == ["rust", "db"]


@pytest.mark.asyncio
async def test_prune_respects_protection(db):
    # 105 unranked stories; higher IDs are newer
    for story_id in range(1, 106):
        await db.execute('upsert_story', story=_story(story_id, posted_at=1_000 + story_id))
        await db.execute('upsert_comment', comment=CommentRecord(
            id=10_000 + story_id, story_id=story_id, parent_id=None, text="c", author="a", posted_at=0))

    # the oldest story is saved by a user
    await db.execute('save_story', user_id="alice", story_id=1)
    assert await db.execute('is_story_protected', story_id=1)

    deleted = await db.execute('prune_stories', keep_count=100)
    assert deleted == 4

    remaining = {r[0] for r in _rows(db, "SELECT id FROM stories")}
    assert len(remaining) == 101
    assert 1 in remaining
    assert remaining.isdisjoint({2, 3, 4, 5})
    orphans = _rows(db, "SELECT COUNT(*) FROM comments WHERE story_id NOT IN (SELECT id FROM stories)")
    assert orphans == [(0,)]


@pytest.mark.asyncio
async def test_prune_keeps_ranked_before_newer(db):
    await db.execute('upsert_story', story=_story(1, rank=1, posted_at=1))
    await db.execute('upsert_story', story=_story(2, posted_at=500))
    await db.execute('upsert_story', story=_story(3, posted_at=900))

    assert await db.execute('prune_stories', keep_count=2) == 1
    assert {r[0] for r in _rows(db, "SELECT id FROM stories")} == {1, 3}


@pytest.mark.asyncio
async def test_unsave_removes_protection(db):
    await db.execute('upsert_story', story=_story(1))
    await db.execute('save_story', user_id="alice", story_id=1)
    assert await db.execute('unsave_story', user_id="alice", story_id=1)
    assert not await db.execute('is_story_protected', story_id=1)


@pytest.mark.asyncio
async def test_missing_summary_listing_and_stats(db):
    await db.execute('upsert_story', story=_story(1, rank=None))
    await db.execute('upsert_story', story=_story(2, rank=3))
    await db.execute('upsert_story', story=_story(3, rank=1, url=""))
    await db.execute('upsert_story', story=_story(4, rank=2))
    await db.execute('update_story_summary_and_topics', story_id=4, summary="s", topics=["t"])

    missing = await db.execute('list_stories_missing_summary', limit=10)
    assert [s['id'] for s in missing] == [2, 1]

    stats = await db.execute('count_stats')
    assert stats['stories'] == 4
    assert stats['ranked'] == 3
    assert stats['summarized'] == 1


@pytest.mark.asyncio
async def test_unknown_operation_raises_storage_error(db):
    with pytest.raises(StorageError):
        await db.execute('drop_everything')


@pytest.mark.asyncio
async def test_execute_after_stop_raises(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "stopped.db"))
    await queue.start()
    await queue.stop()
    with pytest.raises(StorageError):
        await queue.execute('count_stats')


@pytest.mark.asyncio
async def test_start_fails_for_unopenable_path(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "missing-dir" / "test.db"))
    with pytest.raises(StorageError):
        await queue.start()
