"""
PostgreSQL ballot store.

The casting unit of work locks exactly one voter row with SELECT ... FOR
UPDATE under a bounded lock_timeout; ballot inserts and the has-voted update
commit in the same transaction. Reads run in REPEATABLE READ READ ONLY
transactions, so an aggregate never mixes two committed states.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional

from psycopg2 import errors
from psycopg2.extras import execute_values

from ..config import Settings, settings as default_settings
from ..shared.errors import (
    AlreadyVoted,
    CandidateHasBallots,
    InvalidSelection,
    UnknownCandidate,
    UnknownVoter,
)
from ..shared.models import (
    BallotEntry,
    Candidate,
    PublicationStatus,
    Selection,
    Voter,
    VotingWindow,
    utc_now,
)
from .base import BallotStore, CastingSession, ReadSnapshot
from .database import Database
from .schema import SCHEMA_LOCK_KEY, SCHEMA_SQL

logger = logging.getLogger(__name__)

VOTER_COLUMNS = "voter_id, is_verified, has_voted, full_name, voted_at"
CANDIDATE_COLUMNS = "candidate_id, name, position, gender, photo_url, manifesto"
ENTRY_COLUMNS = "entry_id, voter_id, candidate_id, position, cast_at"

# election_settings keys
RESULTS_PUBLISHED = 'results_published'
RESULTS_PUBLISHED_AT = 'results_published_at'
VOTING_START = 'voting_start'
VOTING_END = 'voting_end'


def _voter_from_row(row) -> Voter:
    return Voter(
        voter_id=row[0],
        is_verified=row[1],
        has_voted=row[2],
        full_name=row[3],
        voted_at=row[4]
    )


def _candidate_from_row(row) -> Candidate:
    return Candidate(
        candidate_id=row[0],
        name=row[1],
        position=row[2],
        gender=row[3],
        photo_url=row[4],
        manifesto=row[5]
    )


def _entry_from_row(row) -> BallotEntry:
    return BallotEntry(
        entry_id=row[0],
        voter_id=row[1],
        candidate_id=row[2],
        position=row[3],
        cast_at=row[4]
    )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class _PostgresCastingSession(CastingSession):
    """Casting operations bound to one open transaction."""

    def __init__(self, cursor):
        self._cursor = cursor

    def get_voter_for_update(self, voter_id: str) -> Optional[Voter]:
        self._cursor.execute(
            f"SELECT {VOTER_COLUMNS} FROM voters WHERE voter_id = %s FOR UPDATE",
            (voter_id,)
        )
        row = self._cursor.fetchone()
        return _voter_from_row(row) if row else None

    def get_candidates(self, candidate_ids: Iterable[int]) -> Dict[int, Candidate]:
        ids = list(candidate_ids)
        if not ids:
            return {}
        self._cursor.execute(
            f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE candidate_id = ANY(%s)",
            (ids,)
        )
        return {row[0]: _candidate_from_row(row) for row in self._cursor.fetchall()}

    def insert_ballot_entries(
        self,
        voter_id: str,
        selections: List[Selection],
        cast_at: datetime
    ) -> List[BallotEntry]:
        insert_sql = f"""
        INSERT INTO ballot_entries (voter_id, candidate_id, position, cast_at)
        VALUES %s
        RETURNING {ENTRY_COLUMNS}
        """
        batch_data = [
            (voter_id, selection.candidate_id, selection.position, cast_at)
            for selection in selections
        ]

        try:
            rows = execute_values(self._cursor, insert_sql, batch_data, fetch=True)
        except errors.UniqueViolation as e:
            raise AlreadyVoted(f"Voter {voter_id} already has ballot entries") from e
        except errors.ForeignKeyViolation as e:
            raise InvalidSelection(
                "A selected candidate does not stand for the submitted position"
            ) from e

        return sorted((_entry_from_row(row) for row in rows), key=lambda e: e.entry_id)

    def mark_voted(self, voter_id: str, voted_at: datetime) -> None:
        self._cursor.execute(
            """
            UPDATE voters
            SET has_voted = TRUE, voted_at = %s
            WHERE voter_id = %s AND has_voted = FALSE
            """,
            (voted_at, voter_id)
        )
        if self._cursor.rowcount != 1:
            raise AlreadyVoted()


class _PostgresSnapshot(ReadSnapshot):
    """Aggregate queries bound to one read-only transaction."""

    def __init__(self, cursor):
        self._cursor = cursor

    def _scalar(self, query: str) -> int:
        self._cursor.execute(query)
        return self._cursor.fetchone()[0] or 0

    def list_candidates(self) -> List[Candidate]:
        self._cursor.execute(
            f"SELECT {CANDIDATE_COLUMNS} FROM candidates ORDER BY candidate_id"
        )
        return [_candidate_from_row(row) for row in self._cursor.fetchall()]

    def count_ballots_by_candidate(self) -> Dict[int, int]:
        self._cursor.execute(
            "SELECT candidate_id, COUNT(*) FROM ballot_entries GROUP BY candidate_id"
        )
        return {candidate_id: count for candidate_id, count in self._cursor.fetchall()}

    def count_ballot_entries(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM ballot_entries")

    def count_unique_voters(self) -> int:
        return self._scalar("SELECT COUNT(DISTINCT voter_id) FROM ballot_entries")

    def count_voters(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM voters")

    def count_eligible_voters(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM voters WHERE is_verified")


class PostgresBallotStore(BallotStore):
    """Ballot store backed by PostgreSQL."""

    def __init__(self, config: Optional[Settings] = None, database: Optional[Database] = None):
        self.config = config or default_settings
        self.database = database or Database(self.config)

    def initialize_schema(self) -> None:
        """Create tables, constraints and triggers if they do not exist."""
        with self.database.transaction() as cursor:
            cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (SCHEMA_LOCK_KEY,))
            cursor.execute(SCHEMA_SQL)
        logger.info("Ballot store schema verified")

    @contextmanager
    def unit_of_work(self) -> Iterator[CastingSession]:
        with self.database.transaction() as cursor:
            cursor.execute(
                "SELECT set_config('lock_timeout', %s, true), "
                "set_config('statement_timeout', %s, true)",
                (
                    f"{self.config.CAST_LOCK_TIMEOUT_MS}ms",
                    f"{self.config.CAST_STATEMENT_TIMEOUT_MS}ms",
                )
            )
            yield _PostgresCastingSession(cursor)

    @contextmanager
    def snapshot(self) -> Iterator[ReadSnapshot]:
        with self.database.transaction(read_only=True) as cursor:
            yield _PostgresSnapshot(cursor)

    def list_ballot_entries(self, voter_id: Optional[str] = None) -> List[BallotEntry]:
        with self.database.transaction(read_only=True) as cursor:
            if voter_id is None:
                cursor.execute(f"SELECT {ENTRY_COLUMNS} FROM ballot_entries ORDER BY entry_id")
            else:
                cursor.execute(
                    f"SELECT {ENTRY_COLUMNS} FROM ballot_entries "
                    f"WHERE voter_id = %s ORDER BY entry_id",
                    (voter_id,)
                )
            return [_entry_from_row(row) for row in cursor.fetchall()]

    # Voter registry boundary

    def register_voter(
        self,
        voter_id: str,
        full_name: Optional[str] = None,
        is_verified: bool = False
    ) -> Voter:
        with self.database.transaction() as cursor:
            try:
                cursor.execute(
                    f"""
                    INSERT INTO voters (voter_id, full_name, is_verified)
                    VALUES (%s, %s, %s)
                    RETURNING {VOTER_COLUMNS}
                    """,
                    (voter_id, full_name, is_verified)
                )
            except errors.UniqueViolation as e:
                raise ValueError(f"Voter {voter_id} is already registered") from e
            return _voter_from_row(cursor.fetchone())

    def set_voter_verified(self, voter_id: str, verified: bool = True) -> Voter:
        with self.database.transaction() as cursor:
            cursor.execute(
                f"UPDATE voters SET is_verified = %s WHERE voter_id = %s RETURNING {VOTER_COLUMNS}",
                (verified, voter_id)
            )
            row = cursor.fetchone()
            if row is None:
                raise UnknownVoter(f"Voter {voter_id} not found")
            return _voter_from_row(row)

    def get_voter(self, voter_id: str) -> Optional[Voter]:
        with self.database.transaction(read_only=True) as cursor:
            cursor.execute(f"SELECT {VOTER_COLUMNS} FROM voters WHERE voter_id = %s", (voter_id,))
            row = cursor.fetchone()
            return _voter_from_row(row) if row else None

    # Candidate registry boundary

    def add_candidate(
        self,
        name: str,
        position: str,
        gender: Optional[str] = None,
        photo_url: Optional[str] = None,
        manifesto: Optional[str] = None
    ) -> Candidate:
        with self.database.transaction() as cursor:
            cursor.execute(
                f"""
                INSERT INTO candidates (name, position, gender, photo_url, manifesto)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {CANDIDATE_COLUMNS}
                """,
                (name, position.strip(), gender, photo_url, manifesto)
            )
            return _candidate_from_row(cursor.fetchone())

    def get_candidate(self, candidate_id: int) -> Optional[Candidate]:
        with self.database.transaction(read_only=True) as cursor:
            cursor.execute(
                f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE candidate_id = %s",
                (candidate_id,)
            )
            row = cursor.fetchone()
            return _candidate_from_row(row) if row else None

    def list_candidates_by_position(self) -> Dict[str, List[Candidate]]:
        with self.database.transaction(read_only=True) as cursor:
            cursor.execute(
                f"SELECT {CANDIDATE_COLUMNS} FROM candidates ORDER BY position, name, candidate_id"
            )
            rows = cursor.fetchall()

        grouped: Dict[str, List[Candidate]] = {}
        for row in rows:
            candidate = _candidate_from_row(row)
            grouped.setdefault(candidate.position, []).append(candidate)
        return grouped

    def delete_candidate(self, candidate_id: int) -> None:
        with self.database.transaction() as cursor:
            try:
                cursor.execute("DELETE FROM candidates WHERE candidate_id = %s", (candidate_id,))
            except errors.ForeignKeyViolation as e:
                raise CandidateHasBallots(
                    f"Candidate {candidate_id} has recorded ballots and cannot be deleted"
                ) from e
            if cursor.rowcount == 0:
                raise UnknownCandidate(f"Candidate {candidate_id} not found")

    # Election settings

    def _read_settings(self, *keys: str) -> Dict[str, Optional[str]]:
        with self.database.transaction(read_only=True) as cursor:
            cursor.execute(
                "SELECT setting_key, setting_value FROM election_settings WHERE setting_key = ANY(%s)",
                (list(keys),)
            )
            return dict(cursor.fetchall())

    @staticmethod
    def _upsert_setting(cursor, key: str, value: Optional[str]) -> None:
        cursor.execute(
            """
            INSERT INTO election_settings (setting_key, setting_value, updated_at)
            VALUES (%s, %s, NOW())
            ON CONFLICT (setting_key)
            DO UPDATE SET
                setting_value = EXCLUDED.setting_value,
                updated_at = NOW()
            """,
            (key, value)
        )

    def get_publication_status(self) -> PublicationStatus:
        values = self._read_settings(RESULTS_PUBLISHED, RESULTS_PUBLISHED_AT)
        return PublicationStatus(
            published=values.get(RESULTS_PUBLISHED) == 'true',
            published_at=_parse_timestamp(values.get(RESULTS_PUBLISHED_AT))
        )

    def set_published(self, published: bool) -> PublicationStatus:
        with self.database.transaction() as cursor:
            self._upsert_setting(cursor, RESULTS_PUBLISHED, 'true' if published else 'false')
            if published:
                self._upsert_setting(cursor, RESULTS_PUBLISHED_AT, utc_now().isoformat())
        return self.get_publication_status()

    def get_voting_window(self) -> VotingWindow:
        values = self._read_settings(VOTING_START, VOTING_END)
        return VotingWindow(
            start=_parse_timestamp(values.get(VOTING_START)),
            end=_parse_timestamp(values.get(VOTING_END))
        )

    def set_voting_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime]
    ) -> VotingWindow:
        with self.database.transaction() as cursor:
            self._upsert_setting(cursor, VOTING_START, start.isoformat() if start else None)
            self._upsert_setting(cursor, VOTING_END, end.isoformat() if end else None)
        return VotingWindow(start=start, end=end)

    def check_health(self) -> bool:
        return self.database.health_check()

    def close(self) -> None:
        self.database.close()
