#!/usr/bin/env python3
"""
Database models and operations for HN Station.

All SQLite access goes through ``DatabaseQueue``: callers submit named
operations with ``execute(op_name, **params)`` and a single worker task runs
them one at a time against one connection. This keeps concurrent story
workers, summary workers and background author tasks from stepping on each
other.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from errors import StorageError
from records import StoryRecord, CommentRecord, UserRecord
from telemetry import trace_span

logger = get_logger("models")


def initialize_database(conn) -> None:
    """Create the schema on a new database, or migrate an existing one."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='stories'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
            _run_migrations(conn)
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Bring databases created by older releases up to date."""
    cursor = conn.cursor()
    try:
        # Migration 1: topics column on stories
        cursor.execute("PRAGMA table_info(stories)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'topics' not in columns:
            logger.info("Adding topics column to stories table")
            cursor.execute("ALTER TABLE stories ADD COLUMN topics TEXT")
            conn.commit()
            logger.info("Migration completed: added topics column")

        # Migration 2: saved_stories table (pruning protection)
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='saved_stories'")
        if cursor.fetchone() is None:
            logger.info("Creating saved_stories table")
            cursor.execute("""
                CREATE TABLE saved_stories (
                    user_id TEXT NOT NULL,
                    story_id INTEGER NOT NULL,
                    saved_at INTEGER NOT NULL,
                    PRIMARY KEY (user_id, story_id)
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_saved_stories_story_id ON saved_stories(story_id)")
            conn.commit()
            logger.info("Migration completed: created saved_stories table")
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")
        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")
        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _placeholders(values: Iterable[Any]) -> str:
    return ','.join('?' for _ in values)


def _decode_topics(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        topics = json.loads(raw)
    except ValueError:
        return []
    return [str(t) for t in topics] if isinstance(topics, list) else []


class DatabaseQueue:
    """A queue for database operations to ensure serialized access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database, apply the schema and start the worker.

        Raises:
            StorageError: if the database cannot be opened or initialized.
        """
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake any callers still waiting on an operation
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations in submission order."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a named database operation and return its result.

        Raises:
            StorageError: if the operation fails or the worker is not running.
        """
        if not self.running:
            raise StorageError(f"Database worker is not running ({operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise StorageError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    def _write(self, sql: str, params: Any = (), many: bool = False) -> int:
        """Run one write statement in its own transaction and return the row count."""
        cursor = self.conn.cursor()
        try:
            if many:
                cursor.executemany(sql, params)
            else:
                cursor.execute(sql, params)
            self.conn.commit()
            return cursor.rowcount
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    # Story, comment and user upserts

    def upsert_story(self, story: StoryRecord, keep_rank: bool = False) -> bool:
        """Insert a story or overwrite its mutable fields (title, url, score, counts, rank).

        With ``keep_rank`` an existing row keeps its stored rank.
        """
        now = int(time())
        self._write(
            """
            INSERT INTO stories (id, title, url, score, author, descendant_count, posted_at, rank, created_at, updated_at)
            VALUES (:id, :title, :url, :score, :author, :descendant_count, :posted_at, :rank, :now, :now)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                url = excluded.url,
                score = excluded.score,
                author = excluded.author,
                descendant_count = excluded.descendant_count,
                posted_at = excluded.posted_at,
                rank = CASE WHEN :keep_rank THEN stories.rank ELSE excluded.rank END,
                updated_at = excluded.updated_at
            """,
            {**story.as_params(), "now": now, "keep_rank": 1 if keep_rank else 0},
        )
        return True

    def upsert_comment(self, comment: CommentRecord) -> bool:
        self._write(
            """
            INSERT INTO comments (id, story_id, parent_id, text, author, posted_at)
            VALUES (:id, :story_id, :parent_id, :text, :author, :posted_at)
            ON CONFLICT(id) DO UPDATE SET
                story_id = excluded.story_id,
                parent_id = excluded.parent_id,
                text = excluded.text,
                author = excluded.author,
                posted_at = excluded.posted_at
            """,
            comment.as_params(),
        )
        return True

    def upsert_user(self, user: UserRecord) -> bool:
        self._write(
            """
            INSERT INTO users (username, created_at, karma, about, submitted, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(username) DO UPDATE SET
                created_at = excluded.created_at,
                karma = excluded.karma,
                about = excluded.about,
                submitted = excluded.submitted,
                updated_at = excluded.updated_at
            """,
            (user.username, user.created_at, user.karma, user.about,
             json.dumps(user.submitted_ids), int(time())),
        )
        return True

    # Story queries

    def get_story(self, story_id: int) -> Optional[Dict[str, Any]]:
        """Return the stored story as a dict (topics decoded to a list), or None."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """SELECT id, title, url, score, author, descendant_count, posted_at, rank, summary, topics
                   FROM stories WHERE id = ?""",
                (story_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            story = dict(row)
            story['topics'] = _decode_topics(row['topics'])
            return story
        finally:
            cursor.close()

    def get_stories_status(self, ids: List[int]) -> Dict[int, bool]:
        """Map each stored story ID to whether it already has a non-empty summary.

        IDs that are not stored are absent from the result.
        """
        if not ids:
            return {}
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                f"""SELECT id, COALESCE(summary, '') != '' AS has_summary
                    FROM stories WHERE id IN ({_placeholders(ids)})""",
                list(ids),
            )
            return {row['id']: bool(row['has_summary']) for row in cursor.fetchall()}
        finally:
            cursor.close()

    def list_stories_missing_summary(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Stories that have a URL but no summary yet, best ranked first."""
        cursor = self.conn.cursor()
        try:
            cursor.execute(
                """SELECT id, title, url FROM stories
                   WHERE url != '' AND COALESCE(summary, '') = ''
                   ORDER BY rank IS NULL, rank ASC, posted_at DESC
                   LIMIT ?""",
                (limit,),
            )
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    # Ranks

    def clear_ranks_not_in(self, ids: List[int]) -> int:
        """Null out the rank of every story whose ID is not in ``ids``.

        An empty list is a no-op so a failed top-list fetch cannot wipe all ranks.
        """
        if not ids:
            return 0
        cleared = self._write(
            f"UPDATE stories SET rank = NULL WHERE rank IS NOT NULL AND id NOT IN ({_placeholders(ids)})",
            list(ids),
        )
        logger.debug(f"Cleared rank on {cleared} stories")
        return cleared

    def update_ranks(self, rank_map: Dict[int, int]) -> int:
        """Set the rank of already-stored stories. Unknown IDs are ignored."""
        if not rank_map:
            return 0
        return self._write(
            "UPDATE stories SET rank = ? WHERE id = ?",
            [(rank, story_id) for story_id, rank in rank_map.items()],
            many=True,
        )

    # Summaries

    def update_story_summary_and_topics(self, story_id: int, summary: str, topics: List[str]) -> bool:
        updated = self._write(
            "UPDATE stories SET summary = ?, topics = ?, updated_at = ? WHERE id = ?",
            (summary, json.dumps(list(topics or [])), int(time()), story_id),
        )
        if not updated:
            logger.warning(f"Story {story_id} vanished before its summary could be saved")
        return updated > 0

    def update_story_topics(self, story_id: int, topics: List[str]) -> bool:
        """Fill in topics without touching an existing summary."""
        return self._write(
            "UPDATE stories SET topics = ?, updated_at = ? WHERE id = ?",
            (json.dumps(list(topics or [])), int(time()), story_id),
        ) > 0

    # Protection flag

    def save_story(self, user_id: str, story_id: int) -> bool:
        self._write(
            "INSERT OR IGNORE INTO saved_stories (user_id, story_id, saved_at) VALUES (?, ?, ?)",
            (user_id, story_id, int(time())),
        )
        return True

    def unsave_story(self, user_id: str, story_id: int) -> bool:
        return self._write(
            "DELETE FROM saved_stories WHERE user_id = ? AND story_id = ?",
            (user_id, story_id),
        ) > 0

    def is_story_protected(self, story_id: int) -> bool:
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT 1 FROM saved_stories WHERE story_id = ? LIMIT 1", (story_id,))
            return cursor.fetchone() is not None
        finally:
            cursor.close()

    # Lifecycle

    def prune_stories(self, keep_count: int) -> int:
        """Retain the best `keep_count` stories and delete the rest.

        Stories are ordered by rank (unranked last) and then by posting time,
        newest first. Anything beyond the window that nobody has saved is
        deleted together with its comments. Users are never deleted.

        Returns:
            Number of stories deleted.
        """
        if keep_count <= 0:
            logger.warning("Invalid keep_count value, skipping prune")
            return 0
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                SELECT s.id FROM stories s
                ORDER BY s.rank IS NULL, s.rank ASC, s.posted_at DESC
                LIMIT -1 OFFSET ?
            """, (keep_count,))
            candidates = [row[0] for row in cursor.fetchall()]
            if not candidates:
                return 0

            cursor.execute(
                f"SELECT DISTINCT story_id FROM saved_stories WHERE story_id IN ({_placeholders(candidates)})",
                candidates,
            )
            protected = {row[0] for row in cursor.fetchall()}
            ids_to_delete = [story_id for story_id in candidates if story_id not in protected]
            if not ids_to_delete:
                return 0

            marks = _placeholders(ids_to_delete)
            cursor.execute(f"DELETE FROM comments WHERE story_id IN ({marks})", ids_to_delete)
            comments_deleted = cursor.rowcount
            cursor.execute(f"DELETE FROM stories WHERE id IN ({marks})", ids_to_delete)
            deleted = cursor.rowcount
            self.conn.commit()
            logger.info(
                "Pruned %d stories and %d comments (kept %d, %d protected)",
                deleted,
                comments_deleted,
                keep_count,
                len(protected),
            )
            return deleted
        except Error:
            self.conn.rollback()
            raise
        finally:
            cursor.close()

    def count_stats(self) -> Dict[str, int]:
        """Row counts for the status report."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                SELECT
                    (SELECT COUNT(*) FROM stories) AS stories,
                    (SELECT COUNT(*) FROM stories WHERE rank IS NOT NULL) AS ranked,
                    (SELECT COUNT(*) FROM stories WHERE COALESCE(summary, '') != '') AS summarized,
                    (SELECT COUNT(*) FROM comments) AS comments,
                    (SELECT COUNT(*) FROM users) AS users,
                    (SELECT COUNT(DISTINCT story_id) FROM saved_stories) AS protected
            """)
            return dict(cursor.fetchone())
        finally:
            cursor.close()
