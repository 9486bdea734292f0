"""
Outcome recording for finished sessions.

Match records are append-only: a pairing is written once when its session
ends, and afterwards only its connection flags may flip (once) when both sides
opt in to stay in touch. The idempotency key is the event, the unordered pair
and the session start time, so the two sides (or a timeout racing a leave) can
report the same ending without creating a second record.

Persistence failures are retried and then logged; they never stop anyone from
moving on to the next conversation.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np
import pandas as pd

from .config import DEFAULT_PERSIST_RETRIES, DEFAULT_RETRY_BACKOFF
from .data_models import (
    END_REASON_STATUS,
    ConnectionRecord,
    MatchRecord,
    MatchStatus,
    SessionSummary,
    pair_key,
)
from .matching_models import ConversationOutcome

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, str, str, str]

MATCH_COLUMNS = [
    "match_id",
    "event_id",
    "user1_id",
    "user2_id",
    "compatibility_score",
    "status",
    "started_at",
    "ended_at",
    "duration_seconds",
    "connection_requested",
    "connection_approved",
]


def record_key(record: MatchRecord) -> RecordKey:
    return record.event_id, record.user1_id, record.user2_id, record.started_at.isoformat()


class PersistenceSink(Protocol):
    async def upsert_match(self, record: MatchRecord) -> None:
        ...

    async def upsert_connection(self, record: ConnectionRecord) -> None:
        ...


class InMemoryPersistenceSink:
    """Upserts keyed by (event, pair, start time); keeps a write counter for checks."""

    def __init__(self) -> None:
        self.matches: Dict[RecordKey, MatchRecord] = {}
        self.connections: Dict[str, ConnectionRecord] = {}
        self.match_writes = 0
        self.connection_writes = 0

    async def upsert_match(self, record: MatchRecord) -> None:
        self.match_writes += 1
        self.matches[record_key(record)] = record.model_copy(deep=True)

    async def upsert_connection(self, record: ConnectionRecord) -> None:
        self.connection_writes += 1
        self.connections[record.match_id] = record.model_copy(deep=True)


class CsvPersistenceSink(InMemoryPersistenceSink):
    """Keeps records in memory and mirrors them to ``matches.csv`` / ``connections.csv``."""

    def __init__(self, out_dir: Path):
        super().__init__()
        self.out_dir = Path(out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)

    async def upsert_match(self, record: MatchRecord) -> None:
        await super().upsert_match(record)
        rows = [r.model_dump(exclude={"requested_by"}) for r in self.matches.values()]
        pd.DataFrame(rows, columns=MATCH_COLUMNS).to_csv(self.out_dir / "matches.csv", index=False)

    async def upsert_connection(self, record: ConnectionRecord) -> None:
        await super().upsert_connection(record)
        rows = [c.model_dump() for c in self.connections.values()]
        pd.DataFrame(rows).to_csv(self.out_dir / "connections.csv", index=False)


class OutcomeRecorder:
    def __init__(
        self,
        sink: Optional[PersistenceSink] = None,
        retries: int = DEFAULT_PERSIST_RETRIES,
        backoff: float = DEFAULT_RETRY_BACKOFF,
    ):
        self.sink = sink if sink is not None else InMemoryPersistenceSink()
        self.retries = max(1, int(retries))
        self.backoff = backoff
        self._by_key: Dict[RecordKey, MatchRecord] = {}
        self._by_match: Dict[str, MatchRecord] = {}
        self._connections: Dict[str, ConnectionRecord] = {}
        self.failed_writes: List[Tuple[str, str]] = []
        self._analyses: Dict[str, ConversationOutcome] = {}

    @property
    def records(self) -> List[MatchRecord]:
        return list(self._by_key.values())

    @property
    def connections(self) -> List[ConnectionRecord]:
        return list(self._connections.values())

    def get_match(self, match_id: str) -> MatchRecord:
        try:
            return self._by_match[match_id]
        except KeyError:
            raise KeyError(f"Unknown match {match_id}") from None

    async def _write(self, label: str, ident: str, write, record) -> bool:
        attempts = 1 + self.retries
        for attempt in range(1, attempts + 1):
            try:
                await write(record)
                return True
            except Exception as e:
                if attempt < attempts:
                    logger.info("Retrying %s write for %s (%d/%d): %s", label, ident, attempt, attempts, e)
                    await asyncio.sleep(self.backoff * attempt)
                    continue
                logger.warning("Could not persist %s %s after %d attempts: %s", label, ident, attempts, e)
        self.failed_writes.append((label, ident))
        return False

    def _new_connection(self, record: MatchRecord) -> ConnectionRecord:
        connection = ConnectionRecord(
            connection_id=f"conn_{uuid.uuid4().hex[:12]}",
            event_id=record.event_id,
            match_id=record.match_id,
            user1_id=record.user1_id,
            user2_id=record.user2_id,
        )
        self._connections[record.match_id] = connection
        return connection

    async def record_match(self, summary: SessionSummary) -> MatchRecord:
        """Persist a finished session; repeated calls for the same ending are no-ops."""
        key = summary.idempotency_key
        existing = self._by_key.get(key)
        if existing is not None:
            logger.debug("Match %s already recorded", existing.match_id)
            return existing

        user1, user2 = pair_key(*summary.participant_ids)
        requested_by = set(summary.connection_requests) & {user1, user2}
        record = MatchRecord(
            match_id=summary.match_id,
            event_id=summary.event_id,
            user1_id=user1,
            user2_id=user2,
            compatibility_score=summary.compatibility_score,
            status=END_REASON_STATUS[summary.end_reason],
            started_at=summary.started_at,
            ended_at=summary.ended_at,
            duration_seconds=summary.duration_seconds,
            connection_requested=bool(requested_by),
            connection_approved=requested_by == {user1, user2},
            requested_by=requested_by,
        )
        # registered before the first await so a concurrent call sees it
        self._by_key[key] = record
        self._by_match[record.match_id] = record

        await self._write("match", record.match_id, self.sink.upsert_match, record)
        if record.connection_approved:
            connection = self._new_connection(record)
            await self._write("connection", connection.connection_id, self.sink.upsert_connection, connection)
        return record

    async def record_connection(self, match_id: str, participant_id: str) -> Optional[ConnectionRecord]:
        """One side opts in to connect after the session; both sides -> ConnectionRecord."""
        record = self.get_match(match_id)
        if participant_id not in record.pair:
            raise ValueError(f"{participant_id} was not part of match {match_id}")
        if record.connection_approved:
            return self._connections.get(match_id)
        if participant_id in record.requested_by:
            return None

        record.requested_by.add(participant_id)
        record.connection_requested = True
        connection = None
        if record.requested_by >= set(record.pair):
            record.connection_approved = True
            connection = self._new_connection(record)
        await self._write("match", record.match_id, self.sink.upsert_match, record)
        if connection is not None:
            await self._write("connection", connection.connection_id, self.sink.upsert_connection, connection)
        return connection

    def pair_interactions(self, user_a: str, user_b: str) -> int:
        pair = pair_key(user_a, user_b)
        return sum(1 for r in self._by_key.values() if r.pair == pair)

    def learning_signals(self, user_id: str) -> List[Dict[str, Any]]:
        """Per-match outcomes for one user, the input of the scorer's learning path."""
        signals = []
        for r in self._by_key.values():
            if user_id not in r.pair:
                continue
            signals.append(
                {
                    "matched_user_id": r.user2_id if r.user1_id == user_id else r.user1_id,
                    "compatibility_score": r.compatibility_score,
                    "connection_made": r.connection_approved,
                    "completed": r.status == MatchStatus.COMPLETED,
                }
            )
        return signals

    def recent_matches(self, user_id: str, limit: int = 5) -> List[MatchRecord]:
        mine = [r for r in self._by_key.values() if user_id in r.pair]
        return sorted(mine, key=lambda r: r.started_at)[-limit:]

    def attach_analysis(self, match_id: str, outcome: ConversationOutcome) -> None:
        self.get_match(match_id)
        self._analyses[match_id] = outcome

    def analysis_for(self, match_id: str) -> Optional[ConversationOutcome]:
        return self._analyses.get(match_id)

    def preferred_threshold(self, user_id: str) -> Optional[float]:
        """Mean score of the user's matches that turned into connections."""
        scores = [s["compatibility_score"] for s in self.learning_signals(user_id) if s["connection_made"]]
        if not scores:
            return None
        return float(np.mean(np.asarray(scores, dtype=float)))

    def to_frame(self) -> pd.DataFrame:
        rows = [r.model_dump(exclude={"requested_by"}) for r in self._by_key.values()]
        df = pd.DataFrame(rows, columns=MATCH_COLUMNS)
        if not df.empty:
            df["status"] = df["status"].map(lambda s: getattr(s, "value", s))
        return df

    def summarize(self, user_id: Optional[str] = None) -> Dict[str, float]:
        """Totals for the room (or one user): matches, connections, conversion, average score."""
        df = self.to_frame()
        if user_id is not None and not df.empty:
            df = df[(df["user1_id"] == user_id) | (df["user2_id"] == user_id)]
        total = int(len(df))
        connections = int(df["connection_approved"].sum()) if total else 0
        return {
            "total_matches": total,
            "total_connections": connections,
            "conversion_rate": float(connections / total) if total else 0.0,
            "average_compatibility_score": float(df["compatibility_score"].mean()) if total else 0.0,
            "failed_writes": len(self.failed_writes),
        }
