#!/usr/bin/env python3
"""
HN Station ingestion orchestrator.

Keeps the local story database in sync with Hacker News:
1. Discover top and new stories and refresh ranks
2. Ingest stories, comment trees and authors with a worker pool
3. Queue qualifying stories for rate-limited AI summarization
4. Prune the database back to the retention window

Modes:
  run      one ingestion cycle, then drain the summary queue and exit
  serve    repeat the cycle every INGEST_INTERVAL_SECONDS until SIGINT/SIGTERM
  catchup  summarize stored stories that are still missing a summary
  status   print database counts
  save     protect a story from pruning (--story ID [--user NAME])
  unsave   release a user's protection of a story
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Dict, Optional
import argparse

from config import config, get_logger
from errors import StorageError
from fetcher import ArticleFetcher
from hn_client import HackerNewsClient
from ingest import RankTracker, StoryIngestor, prune_old_stories
from llm_client import close_backends
from models import DatabaseQueue
from summarizer import SummaryQueue, run_catchup
from telemetry import init_telemetry, trace_span
from utils import format_duration

logger = get_logger("orchestrator")
init_telemetry("hn-station")


def validate_configuration() -> None:
    """Exit with status 1 when required settings are missing."""
    errors = []
    if not config.DATABASE_URL or not config.DATABASE_URL.strip():
        errors.append("DATABASE_URL environment variable not set")
    elif not config.DATABASE_PATH:
        errors.append(f"DATABASE_URL '{config.DATABASE_URL}' does not name a database file")
    if config.AI_BACKEND == "openai" and not config.OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY environment variable not set (AI_BACKEND=openai)")

    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Please set required environment variables in your .env file or environment")
        sys.exit(1)


class IngestionOrchestrator:
    """Owns the shared clients and runs ingestion cycles."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        hn: Optional[HackerNewsClient] = None,
        fetcher: Optional[ArticleFetcher] = None,
        backend: Optional[Any] = None,
    ) -> None:
        self.db_path = db_path or config.DATABASE_PATH
        self.db: Optional[DatabaseQueue] = None
        self.hn = hn or HackerNewsClient()
        self.fetcher = fetcher or ArticleFetcher()
        self.backend = backend
        self.stop_event = asyncio.Event()
        self.summary_queue: Optional[SummaryQueue] = None
        self.tracker: Optional[RankTracker] = None
        self.ingestor: Optional[StoryIngestor] = None
        self.cycles = 0

    async def initialize(self) -> None:
        """Open the database and wire up the pipeline stages.

        Raises:
            StorageError: if the database cannot be opened or initialized.
        """
        self.db = DatabaseQueue(self.db_path)
        await self.db.start()
        self.summary_queue = SummaryQueue(self.db, self.fetcher, backend=self.backend)
        self.tracker = RankTracker(self.hn, self.db)
        self.ingestor = StoryIngestor(self.hn, self.db, self.summary_queue, stop_event=self.stop_event)
        logger.info(f"Configuration: {config.get_config_summary()}")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
            except (NotImplementedError, RuntimeError):
                # add_signal_handler is unavailable on some platforms
                logger.debug(f"Cannot install handler for {sig!r}")

    def request_stop(self, sig: Optional[int] = None) -> None:
        if not self.stop_event.is_set():
            name = signal.Signals(sig).name if sig else "stop"
            logger.info(f"🛑 Received {name}, finishing up")
        self.stop_event.set()

    @trace_span("ingest.cycle", tracer_name="orchestrator")
    async def run_cycle(self) -> bool:
        """One discovery, ingestion and pruning pass. Returns False if the cycle failed."""
        self.cycles += 1
        started = monotonic()
        logger.info(f"📡 Starting ingestion cycle {self.cycles}")
        try:
            ids, rank_map = await self.tracker.discover()
            if ids:
                await self.ingestor.run_cycle(ids, rank_map)
            else:
                logger.warning("No story IDs discovered this cycle")
            if not self.stop_event.is_set():
                await prune_old_stories(self.db)
        except StorageError as e:
            logger.error(f"❌ Ingestion cycle {self.cycles} failed: {e}")
            return False
        logger.info(
            f"✅ Ingestion cycle {self.cycles} completed in {format_duration(monotonic() - started)} "
            f"({len(self.summary_queue)} summaries waiting)"
        )
        return True

    async def run_forever(self, interval: Optional[int] = None, one_shot: bool = False) -> bool:
        """Run cycles until stopped. In one-shot mode run once and drain the summary queue."""
        interval = interval or config.INGEST_INTERVAL_SECONDS
        self.summary_queue.start()
        ok = True
        try:
            while not self.stop_event.is_set():
                ok = await self.run_cycle()
                if one_shot:
                    break
                logger.info(f"😴 Sleeping {interval}s until next cycle")
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.summary_queue.close()
            drain_timeout = None if one_shot or not config.SHUTDOWN_DRAIN_TIMEOUT else config.SHUTDOWN_DRAIN_TIMEOUT
            if len(self.summary_queue):
                logger.info(f"⏳ Draining {len(self.summary_queue)} queued summary job(s)")
            await self.summary_queue.join(timeout=drain_timeout)
        return ok

    async def run_catchup(self, limit: Optional[int] = None) -> int:
        return await run_catchup(self.db, self.fetcher, limit or config.CATCHUP_LIMIT, backend=self.backend)

    async def set_protection(self, story_id: int, user_id: str, saved: bool = True) -> bool:
        """Save or unsave a story for ``user_id`` and return whether it is still protected."""
        await self.db.execute('save_story' if saved else 'unsave_story', user_id=user_id, story_id=story_id)
        protected = await self.db.execute('is_story_protected', story_id=story_id)
        if protected:
            logger.info(f"🔒 Story {story_id} is protected from pruning")
        else:
            logger.info(f"🔓 Story {story_id} is no longer protected")
        return protected

    async def close(self) -> None:
        await self.fetcher.close()
        await self.hn.close()
        await close_backends()
        if self.db:
            await self.db.stop()

    async def check_status(self) -> Dict[str, Any]:
        """Database counts for the status report."""
        logger.info("📊 Checking system status")
        status: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'database_path': self.db_path,
        }
        try:
            status['database'] = {'status': 'ok', **await self.db.execute('count_stats')}
        except StorageError as e:
            status['database'] = {'status': 'error', 'message': str(e)}
        db = status['database']
        if db['status'] == 'ok':
            db['summarization_rate'] = f"{(db['summarized'] / db['stories'] * 100):.1f}%" if db['stories'] else "0%"
        status['overall_status'] = 'healthy' if db['status'] == 'ok' else 'issues_detected'
        return status

    def print_status(self, status: Dict[str, Any]) -> None:
        print("\n📊 HN Station Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")
        db = status['database']
        if db['status'] == 'ok':
            print(f"\n💾 Database ({status['database_path']}):")
            print(f"   📰 Stories: {db['stories']} ({db['ranked']} ranked)")
            print(f"   📝 Summaries: {db['summarized']} ({db['summarization_rate']})")
            print(f"   💬 Comments: {db['comments']}")
            print(f"   👤 Users: {db['users']}")
            print(f"   🔒 Protected: {db['protected']}")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")


async def run_mode(args) -> int:
    """Run the selected mode and return the process exit code."""
    orchestrator = IngestionOrchestrator()
    try:
        await orchestrator.initialize()
    except StorageError as e:
        logger.error(f"💥 Cannot start: {e}")
        await orchestrator.close()
        return 1

    try:
        if args.mode == 'status':
            orchestrator.print_status(await orchestrator.check_status())
            return 0
        if args.mode == 'catchup':
            await orchestrator.run_catchup(args.limit)
            return 0
        if args.mode in ('save', 'unsave'):
            if args.story is None:
                logger.error(f"{args.mode} mode needs --story")
                return 2
            await orchestrator.set_protection(args.story, args.user, saved=args.mode == 'save')
            return 0

        orchestrator.install_signal_handlers()
        one_shot = args.mode == 'run' or args.one_shot or config.ONE_SHOT
        ok = await orchestrator.run_forever(interval=args.interval, one_shot=one_shot)
        return 0 if ok else 1
    finally:
        await orchestrator.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Hacker News ingestion and summarization service')
    parser.add_argument('mode', nargs='?', default='serve',
                        choices=['run', 'serve', 'catchup', 'status', 'save', 'unsave'],
                        help='Operation mode (default: serve)')
    parser.add_argument('--one-shot', action='store_true',
                        help='Run a single cycle in serve mode and exit once summaries are drained')
    parser.add_argument('--interval', type=int, default=None,
                        help='Seconds between ingestion cycles (default: INGEST_INTERVAL_SECONDS)')
    parser.add_argument('--limit', type=int, default=None,
                        help='Maximum stories to summarize in catchup mode (default: CATCHUP_LIMIT)')
    parser.add_argument('--story', type=int, default=None,
                        help='Story ID for save/unsave modes')
    parser.add_argument('--user', default='admin',
                        help='User the story is saved for (default: admin)')
    args = parser.parse_args()

    validate_configuration()

    try:
        sys.exit(asyncio.run(run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")


if __name__ == "__main__":
    main()
