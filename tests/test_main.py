from argparse import Namespace

import pytest

import main
from config import config
from models import DatabaseQueue
from records import StoryRecord


def cli_args(mode, story=None, user="alice"):
    return Namespace(mode=mode, story=story, user=user, one_shot=False, interval=None, limit=None)


async def _seed(db_path, count):
    db = DatabaseQueue(db_path)
    await db.start()
    try:
        for story_id in range(1, count + 1):
            await db.execute('upsert_story', story=StoryRecord(
                id=story_id, title=f"Story {story_id}", url="", score=1, author="pg",
                descendant_count=0, posted_at=story_id))
    finally:
        await db.stop()


async def _query(db_path, op, **params):
    db = DatabaseQueue(db_path)
    await db.start()
    try:
        return await db.execute(op, **params)
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_save_mode_protects_story_from_pruning(tmp_path, monkeypatch):
    db_path = str(tmp_path / "cli.db")
    monkeypatch.setattr(config, "DATABASE_PATH", db_path)
    await _seed(db_path, 3)

    assert await main.run_mode(cli_args("save", story=1)) == 0
    assert await _query(db_path, 'is_story_protected', story_id=1)

    # story 1 is the oldest, only its protection keeps it
    assert await _query(db_path, 'prune_stories', keep_count=1) == 1
    assert await _query(db_path, 'get_story', story_id=1) is not None

    assert await main.run_mode(cli_args("unsave", story=1)) == 0
    assert not await _query(db_path, 'is_story_protected', story_id=1)


@pytest.mark.asyncio
async def test_save_mode_requires_story_id(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_PATH", str(tmp_path / "cli.db"))

    assert await main.run_mode(cli_args("save")) == 2
