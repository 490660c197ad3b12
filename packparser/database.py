"""
SQLite Database Layer
=====================
Persistent storage for import jobs and imported packages.

Packages are stored as an arena of rows addressed by integer keys
(packages → tours → blocks → questions); parent references are plain
foreign keys. Reverse collections such as "all editors of a package"
are computed by query, never stored.
No in-memory caching; always reads from disk.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import (
    DraftBlock,
    DraftPackage,
    DraftQuestion,
    DraftTour,
    JobStatus,
    NumberingMode,
)

logger = logging.getLogger(__name__)

# Default database path: project_root/packparser.sqlite
_DEFAULT_DB_PATH = str(Path(__file__).parent.parent / "packparser.sqlite")

_QUESTION_COLUMNS = (
    "number", "order_index", "text", "answer", "accepted_answers",
    "rejected_answers", "comment", "source", "host_instructions",
    "handout_text", "handout_asset", "comment_asset",
)


def get_db_path() -> str:
    """Return the configured database path."""
    return os.environ.get("PACKPARSER_DB_PATH", _DEFAULT_DB_PATH)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


@contextmanager
def get_connection(db_path: str = None):
    """
    Context manager for database connections.
    Ensures proper commit/rollback and connection cleanup.
    """
    db_path = db_path or get_db_path()
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str = None):
    """
    Initialize the database schema.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    db_path = db_path or get_db_path()
    logger.info(f"Initializing database at: {db_path}")

    with get_connection(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS import_jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                owner_id TEXT DEFAULT '',
                status TEXT NOT NULL DEFAULT 'queued',
                step TEXT DEFAULT NULL,
                progress INTEGER DEFAULT 0,
                attempts INTEGER DEFAULT 0,
                input_file_name TEXT DEFAULT '',
                input_file_path TEXT DEFAULT '',
                input_file_size INTEGER DEFAULT 0,
                package_id INTEGER DEFAULT NULL,
                error_kind TEXT DEFAULT NULL,
                error_message TEXT DEFAULT NULL,
                error_details TEXT DEFAULT NULL,
                warnings_json TEXT DEFAULT '',
                confidence REAL DEFAULT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT DEFAULT NULL,
                finished_at TEXT DEFAULT NULL,
                next_retry_at TEXT DEFAULT NULL
            );

            CREATE TABLE IF NOT EXISTS packages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT DEFAULT '',
                description TEXT DEFAULT '',
                preamble TEXT DEFAULT '',
                numbering_mode TEXT DEFAULT 'global',
                tags_json TEXT DEFAULT '[]',
                source_job_id TEXT DEFAULT NULL,
                original_path TEXT DEFAULT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tours (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                package_id INTEGER NOT NULL,
                number TEXT DEFAULT '',
                order_index INTEGER DEFAULT 0,
                is_warmup INTEGER DEFAULT 0,
                preamble TEXT DEFAULT '',
                FOREIGN KEY(package_id) REFERENCES packages(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS blocks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tour_id INTEGER NOT NULL,
                name TEXT DEFAULT NULL,
                order_index INTEGER DEFAULT 0,
                preamble TEXT DEFAULT '',
                FOREIGN KEY(tour_id) REFERENCES tours(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS questions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tour_id INTEGER NOT NULL,
                block_id INTEGER DEFAULT NULL,
                number TEXT DEFAULT '',
                order_index INTEGER DEFAULT 0,
                text TEXT DEFAULT '',
                answer TEXT DEFAULT '',
                accepted_answers TEXT DEFAULT '',
                rejected_answers TEXT DEFAULT '',
                comment TEXT DEFAULT '',
                source TEXT DEFAULT '',
                host_instructions TEXT DEFAULT '',
                handout_text TEXT DEFAULT '',
                handout_asset TEXT DEFAULT NULL,
                comment_asset TEXT DEFAULT NULL,
                FOREIGN KEY(tour_id) REFERENCES tours(id) ON DELETE CASCADE,
                FOREIGN KEY(block_id) REFERENCES blocks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS editors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                package_id INTEGER NOT NULL,
                tour_id INTEGER DEFAULT NULL,
                block_id INTEGER DEFAULT NULL,
                name TEXT NOT NULL,
                position INTEGER DEFAULT 0,
                FOREIGN KEY(package_id) REFERENCES packages(id) ON DELETE CASCADE,
                FOREIGN KEY(tour_id) REFERENCES tours(id) ON DELETE CASCADE,
                FOREIGN KEY(block_id) REFERENCES blocks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS question_authors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                position INTEGER DEFAULT 0,
                FOREIGN KEY(question_id) REFERENCES questions(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_jobs_status
                ON import_jobs(status, seq);
            CREATE INDEX IF NOT EXISTS idx_tours_package_id
                ON tours(package_id);
            CREATE INDEX IF NOT EXISTS idx_blocks_tour_id
                ON blocks(tour_id);
            CREATE INDEX IF NOT EXISTS idx_questions_tour_id
                ON questions(tour_id);
            CREATE INDEX IF NOT EXISTS idx_questions_block_id
                ON questions(block_id);
            CREATE INDEX IF NOT EXISTS idx_editors_package_id
                ON editors(package_id);
            CREATE INDEX IF NOT EXISTS idx_authors_question_id
                ON question_authors(question_id);
        """)

    logger.info("Database schema initialized successfully")


# ─── Import Jobs ──────────────────────────────────────────────────────────────


_JOB_FIELDS = {
    "owner_id", "status", "step", "progress", "attempts",
    "input_file_name", "input_file_path", "input_file_size",
    "package_id", "error_kind", "error_message", "error_details",
    "warnings_json", "confidence", "started_at", "finished_at",
    "next_retry_at",
}


def insert_job(
    job_id: str,
    owner_id: str = "",
    input_file_name: str = "",
    input_file_path: str = "",
    input_file_size: int = 0,
    db_path: str = None,
) -> str:
    """Insert a new Queued job record. Returns the job id."""
    with get_connection(db_path) as conn:
        conn.execute(
            """INSERT INTO import_jobs
               (id, owner_id, status, input_file_name, input_file_path,
                input_file_size, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (job_id, owner_id, JobStatus.QUEUED.value, input_file_name,
             input_file_path, input_file_size, _now()),
        )
    logger.info(f"Inserted job id={job_id} file={input_file_name!r}")
    return job_id


def get_job(job_id: str, db_path: str = None) -> Optional[dict]:
    """Fetch a single job by ID."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM import_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return dict(row) if row else None


def list_jobs(status: str = None, owner_id: str = None,
              limit: int = 100, db_path: str = None) -> list[dict]:
    """List jobs, newest first."""
    query = "SELECT * FROM import_jobs"
    clauses, params = [], []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if owner_id:
        clauses.append("owner_id = ?")
        params.append(owner_id)
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY seq DESC LIMIT ?"
    params.append(limit)

    with get_connection(db_path) as conn:
        return [dict(r) for r in conn.execute(query, params).fetchall()]


def update_job(job_id: str, db_path: str = None, **fields) -> bool:
    """Update job fields. Returns True if row was found."""
    fields = {k: v for k, v in fields.items() if k in _JOB_FIELDS}
    if not fields:
        return False

    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = [getattr(v, "value", v) for v in fields.values()] + [job_id]

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE import_jobs SET {set_clause} WHERE id = ?", values
        )
        return cursor.rowcount > 0


def transition_job(job_id: str, from_status: JobStatus, to_status: JobStatus,
                   db_path: str = None, **fields) -> bool:
    """
    Atomically move a job from one status to another.
    Returns False when the job is no longer in ``from_status``.
    """
    fields = {k: v for k, v in fields.items() if k in _JOB_FIELDS}
    fields["status"] = to_status.value
    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = [getattr(v, "value", v) for v in fields.values()]

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE import_jobs SET {set_clause} WHERE id = ? AND status = ?",
            values + [job_id, from_status.value],
        )
        return cursor.rowcount > 0


def list_queued_jobs(db_path: str = None) -> list[dict]:
    """Queued jobs in creation order."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM import_jobs WHERE status = ? ORDER BY seq",
            (JobStatus.QUEUED.value,),
        ).fetchall()
        return [dict(r) for r in rows]


def fail_running_jobs(message: str, db_path: str = None) -> list[str]:
    """Mark every Running job as Failed. Returns the affected job ids."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT id FROM import_jobs WHERE status = ?",
            (JobStatus.RUNNING.value,),
        ).fetchall()
        job_ids = [r["id"] for r in rows]
        if job_ids:
            conn.execute(
                """UPDATE import_jobs
                   SET status = ?, error_kind = 'internal', error_message = ?,
                       finished_at = ?
                   WHERE status = ?""",
                (JobStatus.FAILED.value, message, _now(),
                 JobStatus.RUNNING.value),
            )
        return job_ids


# ─── Package Tree ─────────────────────────────────────────────────────────────


def _question_values(question: DraftQuestion) -> list:
    return [getattr(question, column) for column in _QUESTION_COLUMNS]


def _insert_editors(conn, package_id: int, names: list[str],
                    tour_id: int = None, block_id: int = None):
    for position, name in enumerate(names):
        conn.execute(
            """INSERT INTO editors (package_id, tour_id, block_id, name, position)
               VALUES (?, ?, ?, ?, ?)""",
            (package_id, tour_id, block_id, name, position),
        )


def _insert_authors(conn, question_id: int, names: list[str]):
    for position, name in enumerate(names):
        conn.execute(
            """INSERT INTO question_authors (question_id, name, position)
               VALUES (?, ?, ?)""",
            (question_id, name, position),
        )


def _insert_question(conn, tour_id: int, block_id: Optional[int],
                     question: DraftQuestion) -> int:
    placeholders = ", ".join("?" for _ in _QUESTION_COLUMNS)
    cursor = conn.execute(
        f"""INSERT INTO questions (tour_id, block_id, {", ".join(_QUESTION_COLUMNS)})
            VALUES (?, ?, {placeholders})""",
        [tour_id, block_id] + _question_values(question),
    )
    question.id = cursor.lastrowid
    _insert_authors(conn, question.id, question.authors)
    return question.id


def insert_package_tree(package: DraftPackage, source_job_id: str = None,
                        db_path: str = None) -> int:
    """
    Insert a full draft tree in a single transaction.
    Assigns database ids onto the given tree. Returns the package id.
    """
    with get_connection(db_path) as conn:
        cursor = conn.execute(
            """INSERT INTO packages
               (title, description, preamble, numbering_mode, tags_json,
                source_job_id, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (package.title, package.description, package.preamble,
             package.numbering_mode.value, json.dumps(package.tags,
                                                      ensure_ascii=False),
             source_job_id, _now()),
        )
        package.id = cursor.lastrowid
        _insert_editors(conn, package.id, package.editors)

        for tour in package.tours:
            _insert_tour(conn, package.id, tour)

    logger.info(
        f"Inserted package id={package.id} with {len(package.tours)} tours, "
        f"{package.total_questions} questions"
    )
    return package.id


def _insert_tour(conn, package_id: int, tour: DraftTour):
    cursor = conn.execute(
        """INSERT INTO tours (package_id, number, order_index, is_warmup, preamble)
           VALUES (?, ?, ?, ?, ?)""",
        (package_id, tour.number, tour.order_index,
         1 if tour.is_warmup else 0, tour.preamble),
    )
    tour.id = cursor.lastrowid
    _insert_editors(conn, package_id, tour.editors, tour_id=tour.id)

    for block in tour.blocks:
        cursor = conn.execute(
            """INSERT INTO blocks (tour_id, name, order_index, preamble)
               VALUES (?, ?, ?, ?)""",
            (tour.id, block.name, block.order_index, block.preamble),
        )
        block.id = cursor.lastrowid
        _insert_editors(conn, package_id, block.editors,
                        tour_id=tour.id, block_id=block.id)
        for question in block.questions:
            _insert_question(conn, tour.id, block.id, question)

    for question in tour.questions:
        _insert_question(conn, tour.id, None, question)


def load_package_tree(package_id: int, db_path: str = None) -> Optional[DraftPackage]:
    """Rebuild the tree of a stored package (with ids). None if missing."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM packages WHERE id = ?", (package_id,)
        ).fetchone()
        if not row:
            return None

        editors: dict[tuple, list[str]] = {}
        for e in conn.execute(
            """SELECT * FROM editors WHERE package_id = ?
               ORDER BY position, id""",
            (package_id,),
        ).fetchall():
            editors.setdefault((e["tour_id"], e["block_id"]), []).append(e["name"])

        authors: dict[int, list[str]] = {}
        for a in conn.execute(
            """SELECT qa.question_id, qa.name FROM question_authors qa
               JOIN questions q ON q.id = qa.question_id
               JOIN tours t ON t.id = q.tour_id
               WHERE t.package_id = ?
               ORDER BY qa.position, qa.id""",
            (package_id,),
        ).fetchall():
            authors.setdefault(a["question_id"], []).append(a["name"])

        package = DraftPackage(
            id=row["id"],
            title=row["title"] or "",
            description=row["description"] or "",
            preamble=row["preamble"] or "",
            numbering_mode=NumberingMode(row["numbering_mode"]),
            tags=json.loads(row["tags_json"] or "[]"),
            editors=editors.get((None, None), []),
        )

        tours = conn.execute(
            "SELECT * FROM tours WHERE package_id = ? ORDER BY order_index, id",
            (package_id,),
        ).fetchall()
        for t in tours:
            tour = DraftTour(
                id=t["id"],
                number=t["number"] or "",
                order_index=t["order_index"],
                is_warmup=bool(t["is_warmup"]),
                preamble=t["preamble"] or "",
                editors=editors.get((t["id"], None), []),
            )
            blocks_by_id: dict[int, DraftBlock] = {}
            for b in conn.execute(
                "SELECT * FROM blocks WHERE tour_id = ? ORDER BY order_index, id",
                (t["id"],),
            ).fetchall():
                block = DraftBlock(
                    id=b["id"],
                    name=b["name"],
                    order_index=b["order_index"],
                    preamble=b["preamble"] or "",
                    editors=editors.get((t["id"], b["id"]), []),
                )
                blocks_by_id[block.id] = block
                tour.blocks.append(block)

            for q in conn.execute(
                "SELECT * FROM questions WHERE tour_id = ? ORDER BY order_index, id",
                (t["id"],),
            ).fetchall():
                data = {c: q[c] for c in _QUESTION_COLUMNS}
                question = DraftQuestion(
                    id=q["id"], authors=authors.get(q["id"], []), **data
                )
                if q["block_id"] is not None and q["block_id"] in blocks_by_id:
                    blocks_by_id[q["block_id"]].questions.append(question)
                else:
                    tour.questions.append(question)

            package.tours.append(tour)

        return package


def sync_package_tree(package: DraftPackage, db_path: str = None) -> DraftPackage:
    """
    Persist an edited tree of an existing package in one transaction:
    rows present in the tree are updated (or inserted when they have no id),
    rows missing from the tree are deleted. New rows get their ids assigned.
    """
    if package.id is None:
        raise ValueError("sync_package_tree requires a stored package")

    with get_connection(db_path) as conn:
        conn.execute(
            """UPDATE packages
               SET title = ?, description = ?, preamble = ?,
                   numbering_mode = ?, tags_json = ?
               WHERE id = ?""",
            (package.title, package.description, package.preamble,
             package.numbering_mode.value,
             json.dumps(package.tags, ensure_ascii=False), package.id),
        )

        kept_tours, kept_blocks, kept_questions = set(), set(), set()
        for tour in package.tours:
            if tour.id is None:
                cursor = conn.execute(
                    "INSERT INTO tours (package_id) VALUES (?)", (package.id,)
                )
                tour.id = cursor.lastrowid
            conn.execute(
                """UPDATE tours SET number = ?, order_index = ?, is_warmup = ?,
                       preamble = ?
                   WHERE id = ? AND package_id = ?""",
                (tour.number, tour.order_index, 1 if tour.is_warmup else 0,
                 tour.preamble, tour.id, package.id),
            )
            kept_tours.add(tour.id)

            for block in tour.blocks:
                if block.id is None:
                    cursor = conn.execute(
                        "INSERT INTO blocks (tour_id) VALUES (?)", (tour.id,)
                    )
                    block.id = cursor.lastrowid
                conn.execute(
                    """UPDATE blocks SET tour_id = ?, name = ?, order_index = ?,
                           preamble = ?
                       WHERE id = ?""",
                    (tour.id, block.name, block.order_index, block.preamble,
                     block.id),
                )
                kept_blocks.add(block.id)
                for question in block.questions:
                    _upsert_question(conn, tour.id, block.id, question)
                    kept_questions.add(question.id)

            for question in tour.questions:
                _upsert_question(conn, tour.id, None, question)
                kept_questions.add(question.id)

        _delete_missing(conn, "questions",
                        """SELECT q.id FROM questions q
                           JOIN tours t ON t.id = q.tour_id
                           WHERE t.package_id = ?""",
                        package.id, kept_questions)
        _delete_missing(conn, "blocks",
                        """SELECT b.id FROM blocks b
                           JOIN tours t ON t.id = b.tour_id
                           WHERE t.package_id = ?""",
                        package.id, kept_blocks)
        _delete_missing(conn, "tours",
                        "SELECT id FROM tours WHERE package_id = ?",
                        package.id, kept_tours)

        # Editors are rewritten wholesale
        conn.execute("DELETE FROM editors WHERE package_id = ?", (package.id,))
        _insert_editors(conn, package.id, package.editors)
        for tour in package.tours:
            _insert_editors(conn, package.id, tour.editors, tour_id=tour.id)
            for block in tour.blocks:
                _insert_editors(conn, package.id, block.editors,
                                tour_id=tour.id, block_id=block.id)

    return package


def _upsert_question(conn, tour_id: int, block_id: Optional[int],
                     question: DraftQuestion):
    if question.id is None:
        _insert_question(conn, tour_id, block_id, question)
        return
    assignments = ", ".join(f"{c} = ?" for c in _QUESTION_COLUMNS)
    conn.execute(
        f"UPDATE questions SET tour_id = ?, block_id = ?, {assignments} WHERE id = ?",
        [tour_id, block_id] + _question_values(question) + [question.id],
    )
    conn.execute(
        "DELETE FROM question_authors WHERE question_id = ?", (question.id,)
    )
    _insert_authors(conn, question.id, question.authors)


def _delete_missing(conn, table: str, select_sql: str, package_id: int, kept: set):
    existing = {r[0] for r in conn.execute(select_sql, (package_id,)).fetchall()}
    stale = existing - kept
    for row_id in stale:
        conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
    if stale:
        logger.debug(f"Deleted {len(stale)} rows from {table} of package {package_id}")


def update_package(package_id: int, db_path: str = None, **fields) -> bool:
    """Update package fields. Returns True if row was found."""
    allowed = {"title", "description", "preamble", "numbering_mode",
               "original_path"}
    fields = {k: v for k, v in fields.items() if k in allowed}
    if not fields:
        return False

    set_clause = ", ".join(f"{k} = ?" for k in fields)
    values = [getattr(v, "value", v) for v in fields.values()] + [package_id]

    with get_connection(db_path) as conn:
        cursor = conn.execute(
            f"UPDATE packages SET {set_clause} WHERE id = ?", values
        )
        return cursor.rowcount > 0


def delete_package(package_id: int, db_path: str = None) -> bool:
    """Delete a package and all cascading data. Returns True if row existed."""
    with get_connection(db_path) as conn:
        cursor = conn.execute("DELETE FROM packages WHERE id = ?", (package_id,))
        return cursor.rowcount > 0


def list_packages(db_path: str = None) -> list[dict]:
    """List packages with their question counts."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT p.id, p.title, p.numbering_mode, p.created_at,
                      COUNT(DISTINCT t.id) AS total_tours,
                      COUNT(q.id) AS total_questions
               FROM packages p
               LEFT JOIN tours t ON t.package_id = p.id
               LEFT JOIN questions q ON q.tour_id = t.id
               GROUP BY p.id
               ORDER BY p.id DESC"""
        ).fetchall()
        return [dict(r) for r in rows]


def find_tour(tour_id: int, db_path: str = None) -> Optional[dict]:
    """Fetch a tour row (includes its package_id)."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM tours WHERE id = ?", (tour_id,)
        ).fetchone()
        return dict(row) if row else None


def find_question(question_id: int, db_path: str = None) -> Optional[dict]:
    """Fetch a question row joined with its tour's package_id."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            """SELECT q.*, t.package_id FROM questions q
               JOIN tours t ON t.id = q.tour_id
               WHERE q.id = ?""",
            (question_id,),
        ).fetchone()
        return dict(row) if row else None


# ─── Reverse Collections ──────────────────────────────────────────────────────


def get_package_editors(package_id: int, db_path: str = None) -> list[str]:
    """All distinct editors of a package across package, tour and block scope."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT name, MIN(id) AS first_id FROM editors
               WHERE package_id = ?
               GROUP BY name ORDER BY first_id""",
            (package_id,),
        ).fetchall()
        return [r["name"] for r in rows]


def get_package_authors(package_id: int, db_path: str = None) -> list[str]:
    """All distinct question authors of a package."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            """SELECT qa.name, MIN(qa.id) AS first_id FROM question_authors qa
               JOIN questions q ON q.id = qa.question_id
               JOIN tours t ON t.id = q.tour_id
               WHERE t.package_id = ?
               GROUP BY qa.name ORDER BY first_id""",
            (package_id,),
        ).fetchall()
        return [r["name"] for r in rows]
