"""
Mind SQLite Store -- memories, full-text index and int8 vectors in one file.

Every memory lives in three places that must agree: the ``memories`` row,
its ``memories_fts`` row (same rowid) and its ``memory_vectors`` row. Writes
to all three happen in one transaction under the store lock, so a failure
leaves none of them behind.

Vector search uses a sqlite-vec ``vec0`` table partitioned by persona when
the extension loads and passes a self-test; otherwise (or when a vec0 query
fails) it scans the canonical ``memory_vectors`` rows with NumPy.

Usage:
    store = MemoryStore(dim=768)
    memory_id, created = store.insert_memory(memory, quantize(embedding))
    hits = store.search_fts("persona-1", "hiking", limit=20)
"""

import logging
import os
import re
import sqlite3
import stat
import threading
import time as _time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from mind.config import default_db_path
from mind.normalize import MAX_TEXT_LENGTH
from mind.quantize import QuantizedVector, quantize
from mind.types import (
    CategoryCount,
    EmotionType,
    Memory,
    MemoryKind,
    Role,
    as_utc,
)

logger = logging.getLogger("mind.store")

SCHEMA_VERSION = 1

# Rowid used by the vec0 self-test; far above anything AUTOINCREMENT reaches.
_PROBE_ROWID = 2 ** 62
_PROBE_PERSONA = "__mind_probe__"

_FTS_TOKEN_RE = re.compile(r"\w+")

# ---------------------------------------------------------------------------
# SQLite retry -- WAL mode + busy_timeout handle most contention, but another
# process holding the write lock past busy_timeout still surfaces as
# "database is locked". Retry with exponential backoff before giving up.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection whose file is readable by the owner only.

    Pre-creates the file with 0o600 and tightens existing files that are
    group or world accessible.
    """
    db_path_str = str(db_path)
    if db_path_str != ":memory:":
        path_obj = Path(db_path_str)
        if not path_obj.exists():
            fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
            os.close(fd)
        else:
            current_mode = path_obj.stat().st_mode
            if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
                os.chmod(db_path_str, 0o600)
    return sqlite3.connect(db_path_str, **kwargs)


def _iso(value: datetime) -> str:
    # Fixed-width UTC strings so lexical order equals time order in SQL
    return as_utc(value).isoformat(timespec="microseconds")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def fts_query(text: str) -> Tuple[str, List[str]]:
    """Build an FTS5 MATCH expression from free text.

    Each word is quoted so user input can never be parsed as FTS syntax.
    Words shorter than three characters are dropped unless nothing else
    is left. Returns the expression and the words it contains.
    """
    words = _FTS_TOKEN_RE.findall(text.lower())
    long_words = [w for w in words if len(w) > 2]
    words = list(dict.fromkeys(long_words or words))
    return " OR ".join('"' + w.replace('"', '""') + '"' for w in words), words


_MEMORY_COLS = (
    "m.memory_id, m.persona_id, m.user_id, m.chat_id, m.role, m.text, "
    "m.kind, m.emotion, m.importance, m.created_at, m.last_accessed"
)
_MEMORY_COL_COUNT = 11


class MemoryStore:
    """SQLite-backed persistence for memories, their FTS rows and vectors.

    Thread-safe: all access to the single connection goes through one
    re-entrant lock. ``version`` increases after every committed write so
    observers can poll cheaply for changes.
    """

    def __init__(self, db_path=None, dim: int = 768, use_vec_index: bool = True):
        if dim <= 0:
            raise ValueError("dim must be positive")
        self.dim = dim
        if db_path is not None and str(db_path) == ":memory:":
            self.db_path = Path(":memory:")
            self._in_memory = True
        else:
            self.db_path = Path(db_path) if db_path else default_db_path()
            self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            self._in_memory = False

        self._lock = threading.RLock()
        self._version = 0
        self._closed = False
        self._vec_available = False
        self._fts_available = False
        self._vec_table = f"memories_vec_{dim}"
        self._conn = self._connect(use_vec_index)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection and schema
    # ------------------------------------------------------------------

    def _connect(self, use_vec_index: bool) -> sqlite3.Connection:
        """Create the SQLite connection and try to load sqlite-vec."""
        conn = secure_connect(
            ":memory:" if self._in_memory else self.db_path,
            timeout=30,
            check_same_thread=False,
        )
        if not self._in_memory:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")

        if use_vec_index:
            try:
                import sqlite_vec

                conn.enable_load_extension(True)
                sqlite_vec.load(conn)
                conn.enable_load_extension(False)
                self._vec_available = True
            except Exception as e:
                logger.warning("sqlite-vec not available, falling back to brute-force: %s", e)
                self._vec_available = False
        return conn

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        c = self._conn

        c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif row[0] > SCHEMA_VERSION:
            raise RuntimeError(
                f"database schema v{row[0]} is newer than this library (v{SCHEMA_VERSION})"
            )

        c.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                memory_id TEXT UNIQUE NOT NULL,
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                chat_id TEXT,
                role TEXT NOT NULL,
                text TEXT NOT NULL,
                kind TEXT NOT NULL,
                emotion TEXT,
                importance REAL NOT NULL,
                created_at TEXT NOT NULL,
                last_accessed TEXT NOT NULL
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_persona_created ON memories(persona_id, created_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_persona_chat ON memories(persona_id, chat_id, created_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_persona_kind ON memories(persona_id, kind)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(importance)")

        c.execute("""
            CREATE TABLE IF NOT EXISTS memory_vectors (
                memory_id TEXT PRIMARY KEY
                    REFERENCES memories(memory_id) ON DELETE CASCADE,
                dim INTEGER NOT NULL,
                q8 BLOB NOT NULL,
                scale REAL NOT NULL
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                chat_id TEXT PRIMARY KEY,
                title TEXT
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS persona_settings (
                persona_id TEXT PRIMARY KEY,
                enabled INTEGER NOT NULL
            )
        """)

        try:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
                USING fts5(text, memory_id UNINDEXED, tokenize='porter unicode61')
            """)
            self._fts_available = True
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 not available, lexical search disabled: %s", e)
            self._fts_available = False

        c.commit()

        if self._vec_available:
            self._init_vec_index()

    def _init_vec_index(self) -> None:
        """Create the persona-partitioned vec0 table and self-test it."""
        c = self._conn
        table = self._vec_table
        probe = np.zeros(self.dim, dtype=np.int8)
        probe[0] = 1
        blob = probe.tobytes()
        try:
            c.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0(
                    persona_id text partition key,
                    embedding int8[{self.dim}] distance_metric=cosine
                )
            """)
            c.execute(
                f"INSERT INTO {table}(rowid, persona_id, embedding) VALUES (?, ?, vec_int8(?))",
                (_PROBE_ROWID, _PROBE_PERSONA, blob),
            )
            c.execute(
                f"SELECT rowid, distance FROM {table} "
                "WHERE embedding MATCH vec_int8(?) AND k = 1 AND persona_id = ?",
                (blob, _PROBE_PERSONA),
            ).fetchall()
            c.execute(f"DELETE FROM {table} WHERE rowid = ?", (_PROBE_ROWID,))
            c.commit()
        except Exception as e:
            c.rollback()
            logger.warning("vec0 index unusable, falling back to brute-force: %s", e)
            self._vec_available = False
            return

        # Backfill vectors written while the index was unavailable
        try:
            missing = c.execute(f"""
                SELECT m.id, m.persona_id, v.q8 FROM memory_vectors v
                JOIN memories m ON m.memory_id = v.memory_id
                WHERE v.dim = ? AND m.id NOT IN (SELECT rowid FROM {table})
            """, (self.dim,)).fetchall()
            if missing:
                c.executemany(
                    f"INSERT INTO {table}(rowid, persona_id, embedding) VALUES (?, ?, vec_int8(?))",
                    missing,
                )
                c.commit()
                logger.info("Backfilled %d vectors into %s", len(missing), table)
        except Exception as e:
            c.rollback()
            logger.warning("vec0 backfill failed, falling back to brute-force: %s", e)
            self._vec_available = False

    @property
    def vec_available(self) -> bool:
        return self._vec_available

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @property
    def version(self) -> int:
        """Monotonic counter bumped after every committed write."""
        return self._version

    @contextmanager
    def _write(self):
        """Run a block as one transaction: commit on success, roll back on error."""
        with self._lock:
            if self._closed:
                raise sqlite3.ProgrammingError("store is closed")
            try:
                yield self._conn
                _retry_on_locked(self._conn.commit)
            except BaseException:
                self._conn.rollback()
                raise
            self._version += 1

    def _read(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        with self._lock:
            if self._closed:
                raise sqlite3.ProgrammingError("store is closed")
            return _retry_on_locked(self._conn.execute, sql, params).fetchall()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_memory(
        self,
        memory: Memory,
        vector: QuantizedVector,
        chat_title: Optional[str] = None,
        dedupe_threshold: Optional[float] = None,
        dedupe_window: int = 200,
        max_per_persona: Optional[int] = None,
    ) -> Tuple[str, bool]:
        """Persist a memory with its FTS row and vector atomically.

        With ``dedupe_threshold`` set, the vector is first compared against
        the persona's ``dedupe_window`` most recent vectors; on a match at or
        above the threshold nothing is inserted, the existing memory's
        last_accessed is refreshed and ``(existing_id, False)`` is returned.
        Otherwise returns ``(memory.id, True)``.
        """
        if not memory.text:
            raise ValueError("memory text must not be empty")
        if len(memory.text) > MAX_TEXT_LENGTH:
            raise ValueError(f"memory text exceeds {MAX_TEXT_LENGTH} characters")
        if vector.dim != self.dim:
            raise ValueError(f"vector has {vector.dim} dimensions, store expects {self.dim}")

        with self._write() as c:
            if max_per_persona is not None:
                count = c.execute(
                    "SELECT COUNT(*) FROM memories WHERE persona_id = ?", (memory.persona_id,)
                ).fetchone()[0]
                if count >= max_per_persona:
                    raise ValueError(
                        f"persona {memory.persona_id} already holds {count} memories "
                        f"(limit {max_per_persona})"
                    )

            if dedupe_threshold is not None:
                duplicate = self._find_duplicate(c, memory.persona_id, vector,
                                                 dedupe_threshold, dedupe_window)
                if duplicate is not None:
                    c.execute(
                        "UPDATE memories SET last_accessed = ? WHERE memory_id = ?",
                        (_iso(memory.created_at), duplicate),
                    )
                    logger.debug("Collapsed near-duplicate into %s", duplicate)
                    return duplicate, False

            cur = c.execute(
                """INSERT INTO memories
                   (memory_id, persona_id, user_id, chat_id, role, text, kind,
                    emotion, importance, created_at, last_accessed)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    memory.id, memory.persona_id, memory.user_id, memory.chat_id,
                    Role(memory.role).value, memory.text, MemoryKind(memory.kind).value,
                    EmotionType(memory.emotion).value if memory.emotion is not None else None,
                    float(memory.importance), _iso(memory.created_at), _iso(memory.last_accessed),
                ),
            )
            rowid = cur.lastrowid
            if self._fts_available:
                c.execute(
                    "INSERT INTO memories_fts(rowid, text, memory_id) VALUES (?, ?, ?)",
                    (rowid, memory.text, memory.id),
                )
            c.execute(
                "INSERT INTO memory_vectors (memory_id, dim, q8, scale) VALUES (?, ?, ?, ?)",
                (memory.id, vector.dim, vector.q8, float(vector.scale)),
            )
            if self._vec_available:
                c.execute(
                    f"INSERT INTO {self._vec_table}(rowid, persona_id, embedding) VALUES (?, ?, vec_int8(?))",
                    (rowid, memory.persona_id, vector.q8),
                )
            if chat_title and memory.chat_id:
                c.execute(
                    """INSERT INTO chats (chat_id, title) VALUES (?, ?)
                       ON CONFLICT(chat_id) DO UPDATE SET title = excluded.title""",
                    (memory.chat_id, chat_title),
                )
        return memory.id, True

    def _find_duplicate(self, c: sqlite3.Connection, persona_id: str, vector: QuantizedVector,
                        threshold: float, window: int) -> Optional[str]:
        rows = c.execute(
            """SELECT v.memory_id, v.q8 FROM memory_vectors v
               JOIN memories m ON m.memory_id = v.memory_id
               WHERE m.persona_id = ? AND v.dim = ?
               ORDER BY m.id DESC LIMIT ?""",
            (persona_id, self.dim, window),
        ).fetchall()
        if not rows:
            return None
        query = np.frombuffer(vector.q8, dtype=np.int8).astype(np.float32)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0:
            return None
        matrix = np.stack([np.frombuffer(r[1], dtype=np.int8) for r in rows]).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ query / (norms * query_norm), 0.0)
        best = int(np.argmax(sims))
        if sims[best] >= threshold:
            return rows[best][0]
        return None

    def _delete_rows(self, c: sqlite3.Connection, rowids: List[int]) -> None:
        if not rowids:
            return
        params = [(r,) for r in rowids]
        if self._fts_available:
            c.executemany("DELETE FROM memories_fts WHERE rowid = ?", params)
        if self._vec_available:
            c.executemany(f"DELETE FROM {self._vec_table} WHERE rowid = ?", params)
        # memory_vectors rows go with the memories rows via ON DELETE CASCADE
        c.executemany("DELETE FROM memories WHERE id = ?", params)

    def delete(self, memory_id: str) -> bool:
        with self._write() as c:
            row = c.execute("SELECT id FROM memories WHERE memory_id = ?", (memory_id,)).fetchone()
            if row is None:
                return False
            self._delete_rows(c, [row[0]])
        return True

    def delete_all_for_persona(self, persona_id: str) -> int:
        with self._write() as c:
            rowids = [r[0] for r in c.execute(
                "SELECT id FROM memories WHERE persona_id = ?", (persona_id,)
            ).fetchall()]
            self._delete_rows(c, rowids)
        logger.info("Deleted %d memories for persona %s", len(rowids), persona_id)
        return len(rowids)

    def delete_all_for_user(self, user_id: str) -> int:
        with self._write() as c:
            rowids = [r[0] for r in c.execute(
                "SELECT id FROM memories WHERE user_id = ?", (user_id,)
            ).fetchall()]
            self._delete_rows(c, rowids)
        logger.info("Deleted %d memories for user %s", len(rowids), user_id)
        return len(rowids)

    def prune_low_importance(self, older_than: datetime, min_importance: float,
                             persona_id: Optional[str] = None) -> int:
        """Delete memories created before ``older_than`` with importance below the floor."""
        sql = "SELECT id FROM memories WHERE created_at < ? AND importance < ?"
        params: List[Any] = [_iso(older_than), min_importance]
        if persona_id is not None:
            sql += " AND persona_id = ?"
            params.append(persona_id)
        with self._write() as c:
            rowids = [r[0] for r in c.execute(sql, params).fetchall()]
            self._delete_rows(c, rowids)
        if rowids:
            logger.info("Pruned %d low-importance memories", len(rowids))
        return len(rowids)

    def touch(self, memory_ids: Iterable[str], when: datetime) -> None:
        ids = list(memory_ids)
        if not ids:
            return
        with self._write() as c:
            c.executemany(
                "UPDATE memories SET last_accessed = ? WHERE memory_id = ?",
                [(_iso(when), mid) for mid in ids],
            )

    def set_chat_title(self, chat_id: str, title: str) -> None:
        with self._write() as c:
            c.execute(
                """INSERT INTO chats (chat_id, title) VALUES (?, ?)
                   ON CONFLICT(chat_id) DO UPDATE SET title = excluded.title""",
                (chat_id, title),
            )

    def set_enabled(self, persona_id: str, enabled: bool) -> None:
        with self._write() as c:
            c.execute(
                """INSERT INTO persona_settings (persona_id, enabled) VALUES (?, ?)
                   ON CONFLICT(persona_id) DO UPDATE SET enabled = excluded.enabled""",
                (persona_id, 1 if enabled else 0),
            )

    def clear_persona_settings(self, persona_id: Optional[str] = None) -> None:
        """Forget enablement for one persona, or for all personas."""
        with self._write() as c:
            if persona_id is None:
                c.execute("DELETE FROM persona_settings")
            else:
                c.execute("DELETE FROM persona_settings WHERE persona_id = ?", (persona_id,))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_enabled(self, persona_id: str) -> bool:
        """Memory is on for a persona until explicitly disabled."""
        rows = self._read("SELECT enabled FROM persona_settings WHERE persona_id = ?", (persona_id,))
        return bool(rows[0][0]) if rows else True

    def get(self, memory_id: str) -> Optional[Memory]:
        rows = self._read(f"SELECT {_MEMORY_COLS} FROM memories m WHERE m.memory_id = ?", (memory_id,))
        return self._row_to_memory(rows[0]) if rows else None

    def get_vector(self, memory_id: str) -> Optional[QuantizedVector]:
        rows = self._read("SELECT q8, scale FROM memory_vectors WHERE memory_id = ?", (memory_id,))
        if not rows:
            return None
        return QuantizedVector(bytes(rows[0][0]), float(rows[0][1]))

    def list_recent_for_chat(self, persona_id: str, chat_id: str, limit: int = 100) -> List[Memory]:
        """The newest ``limit`` memories of a chat, oldest first."""
        rows = self._read(
            f"""SELECT {_MEMORY_COLS} FROM memories m
                WHERE m.persona_id = ? AND m.chat_id = ?
                ORDER BY m.created_at DESC, m.id DESC LIMIT ?""",
            (persona_id, chat_id, limit),
        )
        return [self._row_to_memory(r) for r in reversed(rows)]

    def list_by_persona(
        self,
        persona_id: str,
        user_id: Optional[str] = None,
        kind: Optional[MemoryKind] = None,
        text_query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """A persona's memories, newest first, optionally filtered.

        ``text_query`` is a case-insensitive substring match on the text.
        """
        sql = f"SELECT {_MEMORY_COLS} FROM memories m WHERE m.persona_id = ?"
        params: List[Any] = [persona_id]
        if user_id is not None:
            sql += " AND m.user_id = ?"
            params.append(user_id)
        if kind is not None:
            sql += " AND m.kind = ?"
            params.append(MemoryKind(kind).value)
        sql += " ORDER BY m.created_at DESC, m.id DESC"
        if limit is not None and not text_query:
            sql += " LIMIT ?"
            params.append(limit)
        memories = [self._row_to_memory(r) for r in self._read(sql, params)]
        if text_query:
            needle = text_query.casefold()
            memories = [m for m in memories if needle in m.text.casefold()]
            if limit is not None:
                memories = memories[:limit]
        return memories

    def count(self, persona_id: str, user_id: Optional[str] = None) -> int:
        if user_id is None:
            rows = self._read("SELECT COUNT(*) FROM memories WHERE persona_id = ?", (persona_id,))
        else:
            rows = self._read("SELECT COUNT(*) FROM memories WHERE persona_id = ? AND user_id = ?",
                              (persona_id, user_id))
        return rows[0][0]

    def counts_by_kind(self, persona_id: str, user_id: Optional[str] = None) -> List[CategoryCount]:
        """Per-kind counts for kinds that have at least one memory, in kind order."""
        sql = "SELECT kind, COUNT(*) FROM memories WHERE persona_id = ?"
        params: List[Any] = [persona_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " GROUP BY kind"
        counts = {row[0]: row[1] for row in self._read(sql, params)}
        return [CategoryCount(kind, counts[kind.value]) for kind in MemoryKind if kind.value in counts]

    def get_chat_titles(self, chat_ids: Iterable[str]) -> Dict[str, str]:
        ids = sorted({c for c in chat_ids if c})
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self._read(
            f"SELECT chat_id, title FROM chats WHERE chat_id IN ({placeholders}) AND title IS NOT NULL",
            ids,
        )
        return {r[0]: r[1] for r in rows}

    def recent_vectors(self, persona_id: str, limit: int = 200) -> List[Tuple[str, QuantizedVector]]:
        rows = self._read(
            """SELECT v.memory_id, v.q8, v.scale FROM memory_vectors v
               JOIN memories m ON m.memory_id = v.memory_id
               WHERE m.persona_id = ? ORDER BY m.id DESC LIMIT ?""",
            (persona_id, limit),
        )
        return [(r[0], QuantizedVector(bytes(r[1]), float(r[2]))) for r in rows]

    def stats(self) -> Dict[str, Any]:
        rows = self._read("SELECT COUNT(*), COUNT(DISTINCT persona_id) FROM memories")
        db_size = 0
        if not self._in_memory and self.db_path.exists():
            db_size = self.db_path.stat().st_size
        return {
            "memories": rows[0][0],
            "personas": rows[0][1],
            "dim": self.dim,
            "schema_version": SCHEMA_VERSION,
            "fts_available": self._fts_available,
            "vec_available": self._vec_available,
            "db_path": str(self.db_path),
            "db_size_bytes": db_size,
        }

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_fts(self, persona_id: str, query: str, limit: int = 200) -> List[Tuple[Memory, float]]:
        """BM25 search within one persona.

        Scores blend 70% BM25 (normalized so the best match is 1.0 and the
        worst 0.1) with 30% query-word coverage. Raises when the index is
        unavailable or the query fails; callers decide how to degrade.
        """
        if not self._fts_available:
            raise sqlite3.OperationalError("full-text index unavailable")
        expression, words = fts_query(query)
        if not words:
            return []
        rows = self._read(
            f"""SELECT {_MEMORY_COLS}, f.rank
                FROM memories_fts f
                JOIN memories m ON m.id = f.rowid
                WHERE memories_fts MATCH ? AND m.persona_id = ?
                ORDER BY f.rank LIMIT ?""",
            (expression, persona_id, limit),
        )
        if not rows:
            return []

        # BM25 rank values are negative (more negative = better match)
        ranks = [row[_MEMORY_COL_COUNT] for row in rows]
        best_rank = min(ranks)
        worst_rank = max(ranks)
        results = []
        for row in rows:
            memory = self._row_to_memory(row[:_MEMORY_COL_COUNT])
            rank = row[_MEMORY_COL_COUNT]
            if worst_rank != best_rank:
                bm25_norm = 0.1 + 0.9 * (worst_rank - rank) / (worst_rank - best_rank)
            else:
                bm25_norm = 1.0
            text_lower = memory.text.lower()
            word_ratio = sum(1 for w in words if w in text_lower) / len(words)
            results.append((memory, 0.7 * bm25_norm + 0.3 * word_ratio))
        results.sort(key=lambda r: r[1], reverse=True)
        return results

    def search_vectors(self, persona_id: str, embedding: Sequence[float],
                       limit: int = 200) -> List[Tuple[Memory, float]]:
        """Top ``limit`` memories of a persona by cosine similarity, best first."""
        query = np.asarray(embedding, dtype=np.float32).ravel()
        if query.size != self.dim:
            raise ValueError(f"query has {query.size} dimensions, store expects {self.dim}")
        if limit <= 0:
            return []
        if self._vec_available:
            try:
                return self._vec_search(persona_id, query, limit)
            except Exception as e:
                logger.warning("vec0 query failed, using brute-force scan: %s", e)
        return self._brute_force_search(persona_id, query, limit)

    def _vec_search(self, persona_id: str, query: np.ndarray, limit: int) -> List[Tuple[Memory, float]]:
        rows = self._read(
            f"""SELECT rowid, distance FROM {self._vec_table}
                WHERE embedding MATCH vec_int8(?) AND k = ? AND persona_id = ?""",
            (quantize(query).q8, limit, persona_id),
        )
        if not rows:
            return []
        distances = {r[0]: r[1] for r in rows}
        placeholders = ",".join("?" for _ in distances)
        mem_rows = self._read(
            f"SELECT m.id, {_MEMORY_COLS} FROM memories m WHERE m.id IN ({placeholders})",
            list(distances),
        )
        results = [
            (self._row_to_memory(r[1:]), 1.0 - float(distances[r[0]]))
            for r in mem_rows
        ]
        results.sort(key=lambda r: r[1], reverse=True)
        return results

    def _brute_force_search(self, persona_id: str, query: np.ndarray,
                            limit: int) -> List[Tuple[Memory, float]]:
        rows = self._read(
            f"""SELECT {_MEMORY_COLS}, v.dim, v.q8, v.scale
                FROM memory_vectors v
                JOIN memories m ON m.memory_id = v.memory_id
                WHERE m.persona_id = ?""",
            (persona_id,),
        )
        query_norm = float(np.linalg.norm(query))
        if not rows or query_norm == 0:
            return []

        usable = []
        skipped = 0
        for row in rows:
            dim, q8 = row[_MEMORY_COL_COUNT], row[_MEMORY_COL_COUNT + 1]
            if dim != self.dim or len(q8) != self.dim:
                skipped += 1
                continue
            usable.append(row)
        if skipped:
            logger.warning("Skipped %d stored vectors with mismatched dimensions", skipped)
        if not usable:
            return []

        # Cosine is scale-invariant, so the int8 codes are compared directly
        matrix = np.stack([
            np.frombuffer(r[_MEMORY_COL_COUNT + 1], dtype=np.int8) for r in usable
        ]).astype(np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ query / (norms * query_norm), 0.0)
        order = np.argsort(-sims, kind="stable")[:limit]
        return [(self._row_to_memory(usable[i][:_MEMORY_COL_COUNT]), float(sims[i])) for i in order]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_memory(row: Sequence[Any]) -> Memory:
        (memory_id, persona_id, user_id, chat_id, role, text, kind,
         emotion, importance, created_at, last_accessed) = row
        created = _parse_dt(created_at)
        return Memory(
            id=memory_id,
            persona_id=persona_id,
            user_id=user_id,
            chat_id=chat_id,
            role=Role(role),
            text=text,
            kind=MemoryKind(kind),
            emotion=EmotionType(emotion) if emotion else None,
            importance=float(importance),
            created_at=created,
            last_accessed=_parse_dt(last_accessed) or created,
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if not self._in_memory:
                try:
                    self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
                except sqlite3.Error as e:
                    logger.debug("WAL checkpoint on close failed: %s", e)
            self._conn.close()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
