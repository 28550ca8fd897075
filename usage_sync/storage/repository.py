"""
Repository pattern for data access.

Persists API tokens, per-identity submissions and their daily breakdown rows.
"""

import json
import secrets
import sqlite3
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from usage_sync.core.aggregator import merge_day
from usage_sync.errors import PersistenceError
from usage_sync.logging import get_logger
from usage_sync.storage.db import DEFAULT_DB_PATH, get_connection
from usage_sync.storage.models import (
    ApiToken,
    DailyAggregate,
    DailyBreakdownRow,
    SourceBreakdown,
    SubmissionRecord,
)

logger = get_logger(__name__)

TOKEN_PREFIX = "us_"


class PersistenceMode(Enum):
    """How a submission's days are written over the stored ones."""
    MERGE = "merge"      # Upsert named dates source by source, keep everything else
    REPLACE = "replace"  # Drop every stored date, store only the payload's


class SubmissionRepository:
    """Repository for API tokens, submissions and daily breakdown rows.

    Every public method opens its own connection; ``save_submission`` runs
    all of its reads and writes inside one ``BEGIN IMMEDIATE`` transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def create_api_token(
        self,
        user_id: str,
        username: str,
        ttl_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ApiToken:
        """Issue a new bearer token for an identity.

        Args:
            user_id: Identity the token authenticates
            username: Display name returned with submissions
            ttl_days: Lifetime in days; None for a token that never expires
            now: Issue time, defaults to now

        Returns:
            The stored ApiToken
        """
        now = now or datetime.now()
        token = ApiToken(
            token=TOKEN_PREFIX + secrets.token_urlsafe(32),
            user_id=user_id,
            username=username,
            created_at=now,
            expires_at=now + timedelta(days=ttl_days) if ttl_days is not None else None,
        )
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO api_token (token, user_id, username, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                token.token,
                token.user_id,
                token.username,
                token.created_at.isoformat(),
                token.expires_at.isoformat() if token.expires_at else None,
            ))
            token = replace(token, id=cursor.lastrowid)
        finally:
            conn.close()
        logger.info("api_token_issued", user_id=user_id, token_id=token.id, expires_at=token.expires_at)
        return token

    def get_api_token(self, token: str) -> Optional[ApiToken]:
        """Look up a bearer token; None when unknown or revoked."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM api_token WHERE token = ?", (token,)
            ).fetchone()
        finally:
            conn.close()
        return _row_to_token(row) if row else None

    def list_api_tokens(self, user_id: str) -> List[ApiToken]:
        """Return every live token of an identity, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM api_token WHERE user_id = ? ORDER BY created_at, id",
                (user_id,),
            )
            return [_row_to_token(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def revoke_api_token(self, token: str) -> bool:
        """Delete a token so it no longer authenticates.

        Returns:
            True if the token existed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM api_token WHERE token = ?", (token,))
            revoked = cursor.rowcount > 0
        finally:
            conn.close()
        if revoked:
            logger.info("api_token_revoked")
        return revoked

    def revoke_api_token_by_id(self, user_id: str, token_id: int) -> bool:
        """Delete one of an identity's tokens by its id.

        Tokens of other identities are never touched.

        Returns:
            True if the identity owned a token with that id
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM api_token WHERE id = ? AND user_id = ?", (token_id, user_id)
            )
            revoked = cursor.rowcount > 0
        finally:
            conn.close()
        if revoked:
            logger.info("api_token_revoked", user_id=user_id, token_id=token_id)
        return revoked

    def touch_api_token(self, token: str, now: datetime) -> None:
        """Record the last successful use of a token."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE api_token SET last_used_at = ? WHERE token = ?",
                (now.isoformat(), token),
            )
        finally:
            conn.close()

    def get_submission(self, user_id: str) -> Optional[SubmissionRecord]:
        """Return the identity's current submission, if any."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_SUBMISSION_COLUMNS} FROM submission WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_submission(row) if row else None

    def get_daily_rows(self, submission_id: str) -> List[DailyBreakdownRow]:
        """Return all stored daily rows of a submission, oldest date first."""
        conn = get_connection(self.db_path)
        try:
            return _fetch_daily_rows(conn, submission_id)
        finally:
            conn.close()

    def save_submission(
        self,
        user_id: str,
        contributions: List[DailyAggregate],
        submission_hash: str,
        cli_version: Optional[str] = None,
        mode: PersistenceMode = PersistenceMode.MERGE,
        now: Optional[datetime] = None,
    ) -> SubmissionRecord:
        """Persist a validated submission atomically.

        In MERGE mode each contributed date is upserted: incoming sources
        overwrite stored sources of the same id, other stored sources and
        every date absent from ``contributions`` stay as they were. In
        REPLACE mode all stored dates are dropped first. Either way the
        submission's aggregate metrics are recomputed from the resulting rows
        before commit.

        Args:
            user_id: Authenticated identity
            contributions: Days carried by the payload
            submission_hash: Content hash of the whole incoming payload
            cli_version: Client version from the payload meta
            mode: Persistence mode
            now: Write time, defaults to now

        Returns:
            The submission record as committed

        Raises:
            PersistenceError: If any statement fails; nothing is written
        """
        now = now or datetime.now()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT id, created_at FROM submission WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row is None:
                submission_id = str(uuid.uuid4())
                created_at = now
                conn.execute("""
                    INSERT INTO submission (id, user_id, submission_hash, status, created_at, updated_at)
                    VALUES (?, ?, ?, 'pending', ?, ?)
                """, (submission_id, user_id, submission_hash, now.isoformat(), now.isoformat()))
            else:
                submission_id, created_at = row[0], datetime.fromisoformat(row[1])

            if mode == PersistenceMode.REPLACE:
                conn.execute("DELETE FROM daily_breakdown WHERE submission_id = ?", (submission_id,))

            for day in contributions:
                existing = _fetch_daily_row(conn, submission_id, day.date)
                merged = merge_day(existing.to_aggregate() if existing else None, day)
                _upsert_daily_row(conn, DailyBreakdownRow.from_aggregate(submission_id, merged))

            record = _summarize(
                submission_id=submission_id,
                user_id=user_id,
                rows=_fetch_daily_rows(conn, submission_id),
                submission_hash=submission_hash,
                cli_version=cli_version,
                created_at=created_at,
                updated_at=now,
            )
            conn.execute("""
                UPDATE submission SET
                    total_tokens = ?, total_cost = ?, input_tokens = ?, output_tokens = ?,
                    cache_read_tokens = ?, cache_write_tokens = ?, reasoning_tokens = ?,
                    date_start = ?, date_end = ?, active_days = ?, sources_used = ?, models_used = ?,
                    status = ?, cli_version = ?, submission_hash = ?, updated_at = ?
                WHERE id = ?
            """, (
                record.total_tokens,
                record.total_cost,
                record.input_tokens,
                record.output_tokens,
                record.cache_read_tokens,
                record.cache_write_tokens,
                record.reasoning_tokens,
                record.date_start,
                record.date_end,
                record.active_days,
                json.dumps(record.sources_used),
                json.dumps(record.models_used),
                record.status,
                record.cli_version,
                record.submission_hash,
                record.updated_at.isoformat(),
                submission_id,
            ))
            conn.execute("COMMIT")
        except (sqlite3.Error, OverflowError) as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceError(f"Failed to persist submission for {user_id}: {e}") from e
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        logger.info(
            "submission_persisted",
            user_id=user_id,
            submission_id=submission_id,
            days=len(contributions),
            mode=mode.value,
        )
        return record


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the token, submission and daily breakdown tables if missing.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS api_token (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                username TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT,
                last_used_at TEXT
            );

            CREATE TABLE IF NOT EXISTS submission (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL UNIQUE,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                total_cost REAL NOT NULL DEFAULT 0,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                cache_read_tokens INTEGER NOT NULL DEFAULT 0,
                cache_write_tokens INTEGER NOT NULL DEFAULT 0,
                reasoning_tokens INTEGER NOT NULL DEFAULT 0,
                date_start TEXT,
                date_end TEXT,
                active_days INTEGER NOT NULL DEFAULT 0,
                sources_used TEXT NOT NULL DEFAULT '[]',
                models_used TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL,
                cli_version TEXT,
                submission_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS daily_breakdown (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submission_id TEXT NOT NULL
                    REFERENCES submission(id) ON DELETE CASCADE,
                date TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cache_read_tokens INTEGER NOT NULL,
                cache_write_tokens INTEGER NOT NULL,
                reasoning_tokens INTEGER NOT NULL,
                messages INTEGER NOT NULL,
                source_breakdown TEXT NOT NULL,
                model_breakdown TEXT NOT NULL,
                UNIQUE (submission_id, date)
            );
        """)
    finally:
        conn.close()


_TOKEN_COLUMNS = "id, token, user_id, username, created_at, expires_at, last_used_at"

_SUBMISSION_COLUMNS = """
    id, user_id, total_tokens, total_cost, input_tokens, output_tokens,
    cache_read_tokens, cache_write_tokens, reasoning_tokens, date_start, date_end, active_days,
    sources_used, models_used, status, cli_version, submission_hash, created_at, updated_at
"""

_DAILY_COLUMNS = """
    submission_id, date, tokens, cost, input_tokens, output_tokens,
    cache_read_tokens, cache_write_tokens, reasoning_tokens, messages,
    source_breakdown, model_breakdown
"""


def _fetch_daily_rows(conn: sqlite3.Connection, submission_id: str) -> List[DailyBreakdownRow]:
    cursor = conn.execute(
        f"SELECT {_DAILY_COLUMNS} FROM daily_breakdown WHERE submission_id = ? ORDER BY date",
        (submission_id,),
    )
    return [_row_to_daily(row) for row in cursor.fetchall()]


def _fetch_daily_row(conn: sqlite3.Connection, submission_id: str, date: str) -> Optional[DailyBreakdownRow]:
    row = conn.execute(
        f"SELECT {_DAILY_COLUMNS} FROM daily_breakdown WHERE submission_id = ? AND date = ?",
        (submission_id, date),
    ).fetchone()
    return _row_to_daily(row) if row else None


def _upsert_daily_row(conn: sqlite3.Connection, row: DailyBreakdownRow) -> None:
    conn.execute("""
        INSERT INTO daily_breakdown
        (submission_id, date, tokens, cost, input_tokens, output_tokens,
         cache_read_tokens, cache_write_tokens, reasoning_tokens, messages,
         source_breakdown, model_breakdown)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (submission_id, date) DO UPDATE SET
            tokens = excluded.tokens,
            cost = excluded.cost,
            input_tokens = excluded.input_tokens,
            output_tokens = excluded.output_tokens,
            cache_read_tokens = excluded.cache_read_tokens,
            cache_write_tokens = excluded.cache_write_tokens,
            reasoning_tokens = excluded.reasoning_tokens,
            messages = excluded.messages,
            source_breakdown = excluded.source_breakdown,
            model_breakdown = excluded.model_breakdown
    """, (
        row.submission_id,
        row.date,
        row.tokens,
        row.cost,
        row.input_tokens,
        row.output_tokens,
        row.cache_read_tokens,
        row.cache_write_tokens,
        row.reasoning_tokens,
        row.messages,
        json.dumps({source_id: s.to_dict() for source_id, s in row.source_breakdown.items()}),
        json.dumps(row.model_breakdown),
    ))


def _summarize(
    submission_id: str,
    user_id: str,
    rows: List[DailyBreakdownRow],
    submission_hash: str,
    cli_version: Optional[str],
    created_at: datetime,
    updated_at: datetime,
) -> SubmissionRecord:
    """Aggregate metrics over every stored row of a submission."""
    sources = set()
    models = set()
    for row in rows:
        sources.update(row.source_breakdown)
        models.update(row.model_breakdown)

    return SubmissionRecord(
        id=submission_id,
        user_id=user_id,
        total_tokens=sum(r.tokens for r in rows),
        total_cost=round(sum(r.cost for r in rows), 4),
        input_tokens=sum(r.input_tokens for r in rows),
        output_tokens=sum(r.output_tokens for r in rows),
        cache_read_tokens=sum(r.cache_read_tokens for r in rows),
        cache_write_tokens=sum(r.cache_write_tokens for r in rows),
        reasoning_tokens=sum(r.reasoning_tokens for r in rows),
        date_start=rows[0].date if rows else None,
        date_end=rows[-1].date if rows else None,
        active_days=sum(1 for r in rows if r.cost > 0),
        sources_used=sorted(sources),
        models_used=sorted(models),
        status="verified",
        cli_version=cli_version,
        submission_hash=submission_hash,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_token(row) -> ApiToken:
    return ApiToken(
        id=row[0],
        token=row[1],
        user_id=row[2],
        username=row[3],
        created_at=datetime.fromisoformat(row[4]),
        expires_at=_parse_datetime(row[5]),
        last_used_at=_parse_datetime(row[6]),
    )


def _row_to_daily(row) -> DailyBreakdownRow:
    source_breakdown: Dict[str, SourceBreakdown] = {
        source_id: SourceBreakdown.from_dict(data)
        for source_id, data in json.loads(row[10]).items()
    }
    return DailyBreakdownRow(
        submission_id=row[0],
        date=row[1],
        tokens=row[2],
        cost=row[3],
        input_tokens=row[4],
        output_tokens=row[5],
        cache_read_tokens=row[6],
        cache_write_tokens=row[7],
        reasoning_tokens=row[8],
        messages=row[9],
        source_breakdown=source_breakdown,
        model_breakdown=json.loads(row[11]),
    )


def _row_to_submission(row) -> SubmissionRecord:
    return SubmissionRecord(
        id=row[0],
        user_id=row[1],
        total_tokens=row[2],
        total_cost=row[3],
        input_tokens=row[4],
        output_tokens=row[5],
        cache_read_tokens=row[6],
        cache_write_tokens=row[7],
        reasoning_tokens=row[8],
        date_start=row[9],
        date_end=row[10],
        active_days=row[11],
        sources_used=json.loads(row[12]),
        models_used=json.loads(row[13]),
        status=row[14],
        cli_version=row[15],
        submission_hash=row[16],
        created_at=datetime.fromisoformat(row[17]),
        updated_at=datetime.fromisoformat(row[18]),
    )


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
