#!/usr/bin/env python3
"""
AI summarization of Hacker News stories.

Stories that qualify during ingestion are turned into ``SummaryJob`` entries
on a bounded queue. A small pool of worker tasks drains the queue, sharing a
single rate limiter so AI calls never exceed the configured pace. Each job
fetches the article, asks the AI backend for a JSON summary and persists the
flattened summary and topics.

The backend does not always honour the requested JSON shape, so response
parsing is deliberately tolerant: anything it cannot make sense of becomes a
raw-text summary with no topics.
"""

from enum import Enum
from json import loads, JSONDecodeError
from time import monotonic
from asyncio import Queue, QueueFull, create_task, gather, wait_for, sleep, TimeoutError, CancelledError
from typing import Any, List, Optional, Set, Tuple

from config import config, get_logger
from errors import ContentFetchError, StorageError, SummaryBackendError
from fetcher import ArticleFetcher
from llm_client import generate_summary
from models import DatabaseQueue
from records import SummaryJob
from telemetry import trace_span
from utils import RateLimiter, truncate_content, strip_code_fences, format_duration

logger = get_logger("summarizer")

BULLET_PREFIXES = ("-", "*", "•")


class FieldShape(Enum):
    """Observed shape of a ``summary``/``topics`` value in an AI reply."""

    STRING = "string"
    LIST = "list"
    NESTED_LIST = "nested_list"
    UNKNOWN = "unknown"


def classify_field(value: Any) -> FieldShape:
    if isinstance(value, str):
        return FieldShape.STRING
    if isinstance(value, list):
        if any(isinstance(v, list) for v in value):
            return FieldShape.NESTED_LIST
        return FieldShape.LIST
    return FieldShape.UNKNOWN


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        # {"point": "..."} style entries: keep the string values
        return " ".join(str(v).strip() for v in value.values() if isinstance(v, (str, int, float)))
    return str(value).strip()


def flatten_field(value: Any) -> List[str]:
    """Flatten a string, list or list-of-lists into a list of non-empty strings."""
    shape = classify_field(value)
    if shape is FieldShape.STRING:
        return [value.strip()] if value.strip() else []
    if shape is FieldShape.LIST:
        parts = [_as_text(v) for v in value]
    elif shape is FieldShape.NESTED_LIST:
        parts = []
        for v in value:
            if isinstance(v, list):
                parts.extend(_as_text(inner) for inner in v)
            else:
                parts.append(_as_text(v))
    else:
        text = _as_text(value)
        parts = [text]
    return [p for p in parts if p]


def _bulleted(lines: List[str]) -> str:
    return "\n".join(line if line.startswith(BULLET_PREFIXES) else f"- {line}" for line in lines)


def parse_summary_response(raw: str) -> Tuple[str, List[str]]:
    """Turn an AI reply into ``(summary, topics)``.

    - a JSON object with list-shaped ``summary`` yields one bulleted line per point
    - a JSON object with a string ``summary`` is used as-is
    - an object-shaped ``summary`` yields one bulleted line per value
    - ``topics`` is flattened the same way and kept as a list
    - anything that is not a JSON object yields the raw text and no topics
    """
    raw = raw or ""
    cleaned = strip_code_fences(raw)
    try:
        data = loads(cleaned)
    except (JSONDecodeError, ValueError):
        logger.warning(f"AI response is not valid JSON, storing raw text ({len(raw)} chars)")
        return raw.strip(), []

    if not isinstance(data, dict):
        logger.warning(f"AI response JSON is a {type(data).__name__}, not an object; storing raw text")
        return raw.strip(), []

    summary_value = data.get("summary")
    shape = classify_field(summary_value)
    if shape is FieldShape.STRING:
        summary = summary_value.strip()
    elif shape in (FieldShape.LIST, FieldShape.NESTED_LIST):
        summary = _bulleted(flatten_field(summary_value))
    elif isinstance(summary_value, dict):
        # {"point_1": "...", "point_2": "..."}: one bullet per value
        summary = _bulleted(flatten_field(list(summary_value.values()))) or raw.strip()
    elif summary_value is None:
        logger.warning("AI response has no summary field; storing raw text")
        summary = raw.strip()
    else:
        summary = str(summary_value)

    topics = flatten_field(data.get("topics")) if data.get("topics") is not None else []
    return summary, topics


class SummaryQueue:
    """Bounded job queue drained by rate-limited summary workers.

    ``enqueue`` never blocks: when the queue is full the job is dropped and
    will qualify again on a later ingestion cycle.
    """

    def __init__(
        self,
        db: DatabaseQueue,
        fetcher: ArticleFetcher,
        *,
        endpoint: Optional[str] = None,
        workers: Optional[int] = None,
        maxsize: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None,
        backend: Optional[Any] = None,
    ):
        self.db = db
        self.fetcher = fetcher
        self.endpoint = endpoint if endpoint is not None else config.ai_endpoint
        self.worker_count = workers or config.SUMMARY_WORKERS
        self.queue: Queue = Queue(maxsize=maxsize or config.SUMMARY_QUEUE_SIZE)
        self.rate_limiter = rate_limiter or RateLimiter(config.SUMMARY_INTERVAL_SECONDS)
        self.backend = backend
        self._workers = []
        self._pending: Set[int] = set()
        self._backfilled: Set[int] = set()
        self._closed = False
        self.stats = {"enqueued": 0, "dropped": 0, "saved": 0, "abandoned": 0, "failed": 0}

    def __len__(self) -> int:
        return self.queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [create_task(self._worker(n)) for n in range(self.worker_count)]
        logger.info(
            f"Started {self.worker_count} summary worker(s), one AI call every "
            f"{self.rate_limiter.min_interval:g}s, queue size {self.queue.maxsize}"
        )

    def enqueue(self, job: SummaryJob) -> bool:
        """Add a job without waiting. Returns False if it was not queued."""
        if self._closed:
            logger.debug(f"Summary queue closed, not queueing story {job.story_id}")
            return False
        if job.story_id in self._pending:
            return False
        if job.backfill_topics and job.story_id in self._backfilled:
            # One topic backfill attempt per story per process
            return False
        try:
            self.queue.put_nowait(job)
        except QueueFull:
            self.stats["dropped"] += 1
            logger.warning(f"Summary queue full ({self.queue.maxsize}), dropping story {job.story_id}: {job.title}")
            return False
        self._pending.add(job.story_id)
        if job.backfill_topics:
            self._backfilled.add(job.story_id)
        self.stats["enqueued"] += 1
        logger.debug(f"Queued summary for story {job.story_id} ({self.queue.qsize()} waiting)")
        return True

    async def _worker(self, n: int) -> None:
        while True:
            job = await self.queue.get()
            try:
                if job is None:
                    return
                await self.rate_limiter.acquire()
                await self.process_job(job)
            finally:
                if job is not None:
                    self._pending.discard(job.story_id)
                self.queue.task_done()

    async def process_job(self, job: SummaryJob) -> bool:
        """Run one job under the job timeout. Errors are logged, never raised."""
        started = monotonic()
        try:
            saved = await wait_for(self._summarize(job), timeout=config.SUMMARY_JOB_TIMEOUT)
        except CancelledError:
            raise
        except TimeoutError:
            self.stats["failed"] += 1
            logger.error(f"Summary for story {job.story_id} timed out after {config.SUMMARY_JOB_TIMEOUT}s")
            return False
        except ContentFetchError as e:
            self.stats["failed"] += 1
            logger.warning(f"Failed to fetch content (story {job.story_id}): {e}")
            return False
        except SummaryBackendError as e:
            self.stats["failed"] += 1
            logger.error(f"Failed to generate summary (story {job.story_id}): {e}")
            return False
        except StorageError as e:
            self.stats["failed"] += 1
            logger.error(f"Failed to save summary/topics (story {job.story_id}): {e}")
            return False
        except Exception as e:
            self.stats["failed"] += 1
            logger.exception(f"Unexpected error summarizing story {job.story_id}: {e}")
            return False
        if saved:
            self.stats["saved"] += 1
            logger.info(f"📝 Summarized story {job.story_id} in {format_duration(monotonic() - started)}")
        return saved

    @trace_span(
        "summary.job",
        tracer_name="summarizer",
        attr_from_args=lambda self, job: {"story.id": job.story_id, "story.url": job.url},
    )
    async def _summarize(self, job: SummaryJob) -> bool:
        logger.info(f"Processing summary for story {job.story_id}: {job.title}")
        article = await self.fetcher.fetch_article(job.url)
        if not article.content or len(article.content) < config.CONTENT_MIN_CHARS:
            self.stats["abandoned"] += 1
            logger.info(f"Content too short (story {job.story_id}), skipping")
            return False

        text = truncate_content(article.content, config.CONTENT_MAX_CHARS)
        raw = await generate_summary(self.endpoint, job.title, text, backend_override=self.backend)
        summary, topics = parse_summary_response(raw)
        if job.backfill_topics:
            if not topics:
                self.stats["abandoned"] += 1
                logger.info(f"No topics in AI reply for story {job.story_id}, leaving it as is")
                return False
            return await self.db.execute('update_story_topics', story_id=job.story_id, topics=topics)
        if not summary:
            self.stats["abandoned"] += 1
            logger.warning(f"AI returned an empty summary for story {job.story_id}")
            return False
        return await self.db.execute(
            'update_story_summary_and_topics', story_id=job.story_id, summary=summary, topics=topics
        )

    def close(self) -> None:
        """Stop accepting new jobs. Queued jobs are still processed."""
        self._closed = True

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for queued jobs to finish and stop the workers.

        With a timeout, jobs still waiting when it expires are discarded.
        """
        self.close()
        if not self._workers:
            return

        async def _drain():
            for _ in self._workers:
                await self.queue.put(None)
            await gather(*self._workers)

        try:
            await wait_for(_drain(), timeout=timeout)
        except TimeoutError:
            remaining = max(0, self.queue.qsize() - len(self._workers))
            logger.warning(f"Summary drain timed out, discarding {remaining} queued job(s)")
            for task in self._workers:
                task.cancel()
            await gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(
            "Summary workers stopped: saved=%d abandoned=%d failed=%d dropped=%d",
            self.stats["saved"], self.stats["abandoned"], self.stats["failed"], self.stats["dropped"],
        )


async def run_catchup(db: DatabaseQueue, fetcher: ArticleFetcher, limit: int, *,
                      delay: Optional[float] = None, backend: Optional[Any] = None) -> int:
    """Summarize stored stories that have a URL but no summary, one at a time."""
    stories = await db.execute('list_stories_missing_summary', limit=limit)
    logger.info(f"Found {len(stories)} stories needing summaries")
    runner = SummaryQueue(db, fetcher, backend=backend, workers=1, maxsize=1)
    pause = config.CATCHUP_DELAY_SECONDS if delay is None else delay
    saved = 0
    for i, story in enumerate(stories, 1):
        logger.info(f"[{i}/{len(stories)}] Processing story {story['id']}: {story['title']}")
        job = SummaryJob(story_id=story['id'], url=story['url'], title=story['title'])
        if await runner.process_job(job):
            saved += 1
        if pause > 0 and i < len(stories):
            await sleep(pause)
    logger.info(f"Catch-up complete: {saved}/{len(stories)} summaries saved")
    return saved
