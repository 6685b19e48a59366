#!/usr/bin/env python3
"""
Story discovery, rank tracking and ingestion.

Each cycle:

1. ``RankTracker.discover`` fetches the top and new lists, refreshes stored
   ranks, and returns the IDs to process in priority order.
2. ``StoryIngestor.run_cycle`` fans those IDs out to a fixed pool of worker
   tasks. Each worker upserts the story, walks its comment tree, hands authors
   to a background pool and queues qualifying stories for summarization.
3. ``prune_old_stories`` trims the store back to the retention window.
"""

from asyncio import Event, Queue, create_task, gather, CancelledError
from time import monotonic
from typing import Dict, Iterable, List, Optional, Set, Tuple

from config import config, get_logger
from errors import SourceError, StorageError
from hn_client import HackerNewsClient
from models import DatabaseQueue
from records import Item, StoryRecord, CommentRecord, UserRecord, SummaryJob
from summarizer import SummaryQueue
from telemetry import trace_span
from utils import BackgroundTaskPool, format_duration

logger = get_logger("ingest")


class RankTracker:
    """Turns the top/new lists into a processing order and keeps stored ranks current."""

    def __init__(self, hn: HackerNewsClient, db: DatabaseQueue, limit: Optional[int] = None):
        self.hn = hn
        self.db = db
        self.limit = limit or config.MAX_STORIES_PER_CYCLE

    @staticmethod
    def build_rank_map(top_ids: Iterable[int]) -> Dict[int, int]:
        """1-based position of each ID in the top list. Repeated IDs keep their first rank."""
        rank_map: Dict[int, int] = {}
        for position, story_id in enumerate(top_ids, 1):
            rank_map.setdefault(story_id, position)
        return rank_map

    @staticmethod
    def order_ids(top_ids: Iterable[int], new_ids: Iterable[int], rank_map: Dict[int, int],
                  limit: int) -> List[int]:
        """Union of both lists: ranked IDs by rank, then unranked IDs newest (highest) first."""
        unique = set(top_ids) | set(new_ids)
        ranked = sorted((i for i in unique if i in rank_map), key=rank_map.__getitem__)
        unranked = sorted((i for i in unique if i not in rank_map), reverse=True)
        return (ranked + unranked)[:limit]

    @trace_span("ingest.discover", tracer_name="ingest")
    async def discover(self) -> Tuple[List[int], Optional[Dict[int, int]]]:
        """Fetch both lists, update stored ranks and return ``(ordered_ids, rank_map)``.

        When the top list cannot be fetched, stored ranks are left alone for
        this cycle, only the new list is processed and ``rank_map`` is None.
        """
        top_ids: List[int] = []
        top_ok = False
        try:
            top_ids = await self.hn.fetch_top_ids()
            top_ok = True
            logger.info(f"Fetched {len(top_ids)} top stories")
        except SourceError as e:
            logger.error(f"Failed to fetch top stories: {e}")

        new_ids: List[int] = []
        try:
            new_ids = await self.hn.fetch_new_ids()
            logger.info(f"Fetched {len(new_ids)} new stories")
        except SourceError as e:
            logger.error(f"Failed to fetch new stories: {e}")

        rank_map = self.build_rank_map(top_ids)

        if top_ok:
            try:
                cleared = await self.db.execute('clear_ranks_not_in', ids=top_ids)
                updated = await self.db.execute('update_ranks', rank_map=rank_map)
                logger.debug(f"Ranks refreshed: {cleared} cleared, {updated} updated")
            except StorageError as e:
                logger.error(f"Failed to refresh ranks: {e}")

        ordered = self.order_ids(top_ids, new_ids, rank_map, self.limit)
        logger.info(f"Queuing {len(ordered)} unique stories for ingestion (prioritizing by rank)")
        return ordered, rank_map if top_ok else None


class StoryIngestor:
    """Fetch and store stories, their comment trees and their authors."""

    def __init__(
        self,
        hn: HackerNewsClient,
        db: DatabaseQueue,
        summary_queue: Optional[SummaryQueue] = None,
        *,
        workers: Optional[int] = None,
        author_pool: Optional[BackgroundTaskPool] = None,
        stop_event: Optional[Event] = None,
    ):
        self.hn = hn
        self.stop_event = stop_event
        self.db = db
        self.summary_queue = summary_queue
        self.worker_count = workers or config.INGEST_WORKERS
        self.author_pool = author_pool or BackgroundTaskPool(config.AUTHOR_TASK_LIMIT, name="author")
        self._seen_authors: Set[str] = set()
        self._keep_ranks = False
        self.stats: Dict[str, int] = {}

    def should_skip(self, story_id: int, rank_map: Dict[int, int], status_map: Dict[int, bool]) -> bool:
        """Already summarized and not near the top of the front page."""
        if not status_map.get(story_id, False):
            return False
        rank = rank_map.get(story_id)
        return rank is None or rank > config.FRESH_RANK_LIMIT

    async def run_cycle(self, ids: List[int], rank_map: Optional[Dict[int, int]]) -> Dict[str, int]:
        """Process ``ids`` with the worker pool and wait for author tasks to settle.

        A ``rank_map`` of None means the top list was unavailable: upserts keep
        whatever rank is already stored.
        """
        started = monotonic()
        self._keep_ranks = rank_map is None
        rank_map = rank_map or {}
        self._seen_authors = set()
        self.stats = {"stories": 0, "comments": 0, "skipped": 0, "failed": 0, "enqueued": 0}

        try:
            status_map = await self.db.execute('get_stories_status', ids=ids)
        except StorageError as e:
            logger.warning(f"Failed to fetch story statuses, processing everything: {e}")
            status_map = {}

        queue: Queue = Queue()
        for story_id in ids:
            queue.put_nowait(story_id)
        for _ in range(self.worker_count):
            queue.put_nowait(None)

        workers = [create_task(self._worker(n, queue, rank_map, status_map)) for n in range(self.worker_count)]
        try:
            await gather(*workers)
        except CancelledError:
            for task in workers:
                task.cancel()
            raise
        finally:
            await self.author_pool.drain()

        self.stats["authors"] = len(self._seen_authors)
        logger.info(
            "Ingestion cycle: %d stories, %d comments, %d authors, %d skipped, %d failed, %d queued for summary in %s",
            self.stats["stories"], self.stats["comments"], self.stats["authors"], self.stats["skipped"],
            self.stats["failed"], self.stats["enqueued"], format_duration(monotonic() - started),
        )
        return self.stats

    async def _worker(self, n: int, queue: Queue, rank_map: Dict[int, int], status_map: Dict[int, bool]) -> None:
        while True:
            story_id = await queue.get()
            if story_id is None:
                return
            if self.stop_event is not None and self.stop_event.is_set():
                # Shutting down: drain the remaining IDs without fetching them
                continue
            if self.should_skip(story_id, rank_map, status_map):
                self.stats["skipped"] += 1
                continue
            try:
                await self.process_story(story_id, rank_map.get(story_id))
            except CancelledError:
                raise
            except Exception as e:
                self.stats["failed"] += 1
                logger.error(f"Worker {n}: failed to process story {story_id}: {e}")

    @trace_span(
        "ingest.process_story",
        tracer_name="ingest",
        attr_from_args=lambda self, story_id, rank=None: {"story.id": story_id, "story.rank": rank},
    )
    async def process_story(self, story_id: int, rank: Optional[int] = None) -> bool:
        """Store one story with its comments. Returns False if nothing was stored."""
        try:
            item = await self.hn.fetch_item(story_id)
        except SourceError as e:
            self.stats["failed"] = self.stats.get("failed", 0) + 1
            logger.warning(f"Failed to fetch story {story_id}: {e}")
            return False

        if not item.is_story:
            logger.debug(f"Item {story_id} is a {item.type or 'untyped item'}, skipping")
            return False

        await self.db.execute(
            'upsert_story', story=StoryRecord.from_item(item, rank), keep_rank=self._keep_ranks
        )
        self.stats["stories"] = self.stats.get("stories", 0) + 1

        self.submit_author(item.author)
        if item.child_ids:
            await self.walk_comments(item.id, item.child_ids)
        await self._maybe_enqueue_summary(item)
        return True

    async def walk_comments(self, story_id: int, child_ids: List[int]) -> int:
        """Depth-first walk of a comment tree using an explicit stack.

        Every comment ID is visited at most once, so cyclic or repeated child
        references terminate. Deleted and dead comments are skipped together
        with their replies, as are replies to a comment that failed to store.
        The walk ends early once the stop event is set.
        """
        stack: List[Tuple[int, Optional[int]]] = [(kid, None) for kid in reversed(child_ids)]
        visited: Set[int] = {story_id}
        stored = 0

        while stack:
            if self.stop_event is not None and self.stop_event.is_set():
                logger.info(f"Stop requested, leaving {len(stack)} comment(s) of story {story_id} unvisited")
                break
            comment_id, parent_id = stack.pop()
            if comment_id in visited:
                continue
            visited.add(comment_id)

            try:
                item = await self.hn.fetch_item(comment_id)
            except SourceError as e:
                logger.warning(f"Failed to fetch comment {comment_id}: {e}")
                continue
            if not item.is_live_comment:
                continue

            try:
                await self.db.execute(
                    'upsert_comment', comment=CommentRecord.from_item(item, story_id, parent_id)
                )
            except StorageError as e:
                logger.error(f"Failed to upsert comment {comment_id}: {e}")
                continue
            stored += 1

            self.submit_author(item.author)
            stack.extend((kid, item.id) for kid in reversed(item.child_ids))

        self.stats["comments"] = self.stats.get("comments", 0) + stored
        return stored

    def submit_author(self, username: str) -> None:
        """Queue a background upsert of ``username``, once per cycle."""
        if not username or username in self._seen_authors:
            return
        self._seen_authors.add(username)
        self.author_pool.submit(self._upsert_author(username), label=username)

    async def _upsert_author(self, username: str) -> None:
        author = await self.hn.fetch_user(username)
        await self.db.execute('upsert_user', user=UserRecord.from_author(author))

    async def _maybe_enqueue_summary(self, item: Item) -> bool:
        """Queue a summary job for linked stories above the score threshold that still need one."""
        if self.summary_queue is None or not item.url or item.score <= config.SUMMARY_SCORE_THRESHOLD:
            return False
        try:
            existing = await self.db.execute('get_story', story_id=item.id)
        except StorageError as e:
            logger.warning(f"Could not check summary state of story {item.id}: {e}")
            return False
        if existing is None:
            return False

        has_summary = bool((existing.get('summary') or '').strip())
        if has_summary and existing.get('topics'):
            return False
        job = SummaryJob(story_id=item.id, url=item.url, title=item.title, backfill_topics=has_summary)
        queued = self.summary_queue.enqueue(job)
        if queued:
            self.stats["enqueued"] = self.stats.get("enqueued", 0) + 1
        return queued


async def prune_old_stories(db: DatabaseQueue, keep_count: Optional[int] = None) -> int:
    """Apply the retention window. Failures are logged and reported as 0 deletions."""
    keep = keep_count or config.RETAIN_STORIES
    logger.info(f"Cleaning up old stories (keeping top {keep})")
    try:
        return await db.execute('prune_stories', keep_count=keep)
    except StorageError as e:
        logger.error(f"Failed to prune old stories: {e}")
        return 0
