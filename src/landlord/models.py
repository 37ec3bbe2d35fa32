"""Shared Pydantic models for the landlord scorekeeping sync subsystem.

Every entity has exactly one schema. The same JSON produced here is written to
the local cache, embedded in pending operation payloads, stored as remote
documents and returned by the HTTP surface.
"""

import enum
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger("landlord.models")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Every timestamp leaving the codec is timezone-aware
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


def new_local_id() -> str:
    """Client-generated id, reused unchanged as the remote document key."""
    return f"local-{uuid.uuid4().hex}"


class Document(BaseModel):
    """Base for entities stored as documents (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        """Full JSON-compatible representation, including the id."""
        return self.model_dump(mode="json", by_alias=True)

    def to_document(self) -> dict:
        """Remote document body; the document key carries the id."""
        return self.model_dump(mode="json", by_alias=True, exclude={"id"})

    @classmethod
    def from_document(cls, doc_id: str, data: dict):
        body = {k: v for k, v in data.items() if k != "id"}
        return cls.model_validate({**body, "id": doc_id})


def decode_many(model, items) -> list:
    """
    Validate a list of raw dicts, skipping items that fail.

    One corrupt record must not block loading the rest of a collection.
    """
    decoded = []
    for item in items:
        try:
            decoded.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping undecodable {model.__name__}: {e.error_count()} error(s)")
    return decoded


# ---------- Player Models ----------

class PlayerColor(str, enum.Enum):
    """Display-only color tag."""
    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    PINK = "pink"
    GRAY = "gray"


class Player(Document):
    """A player; `name` is the unique, case-sensitive key."""
    id: Optional[str] = None
    name: str
    created_at: UtcDatetime = Field(default_factory=utcnow)
    color: Optional[PlayerColor] = None


# ---------- Match Models ----------

class Match(Document):
    """A session of rounds between three players."""
    id: Optional[str] = None
    started_at: UtcDatetime = Field(default_factory=utcnow)
    ended_at: Optional[UtcDatetime] = None

    # Player references with cached names
    player_a_id: str
    player_b_id: str
    player_c_id: str
    player_a_name: str
    player_b_name: str
    player_c_name: str

    # Final scores after all games
    final_score_a: int = 0
    final_score_b: int = 0
    final_score_c: int = 0

    # Running max/min of cumulative score during the match
    max_snapshot_a: int = 0
    max_snapshot_b: int = 0
    max_snapshot_c: int = 0
    min_snapshot_a: int = 0
    min_snapshot_b: int = 0
    min_snapshot_c: int = 0

    total_games: int = 0
    initial_starter: int = Field(default=0, ge=0, le=2)

    def finalize(self, cumulative_scores, ended_at: Optional[datetime] = None):
        """
        Stamp end time and aggregates from the cumulative score triples.

        Safe to call again after a corrective edit; every aggregate is
        recomputed from scratch.

        Args:
            cumulative_scores: List of (a, b, c) running totals, one per game
            ended_at: End timestamp (defaults to now)
        """
        self.ended_at = as_utc(ended_at) if ended_at else utcnow()
        self.total_games = len(cumulative_scores)

        max_a = max_b = max_c = 0
        min_a = min_b = min_c = 0
        for a, b, c in cumulative_scores:
            max_a, max_b, max_c = max(max_a, a), max(max_b, b), max(max_c, c)
            min_a, min_b, min_c = min(min_a, a), min(min_b, b), min(min_c, c)

        if cumulative_scores:
            self.final_score_a, self.final_score_b, self.final_score_c = cumulative_scores[-1]
        else:
            self.final_score_a = self.final_score_b = self.final_score_c = 0

        self.max_snapshot_a, self.max_snapshot_b, self.max_snapshot_c = max_a, max_b, max_c
        self.min_snapshot_a, self.min_snapshot_b, self.min_snapshot_c = min_a, min_b, min_c
        return self


class GameRecord(Document):
    """One round within a match."""
    id: Optional[str] = None
    match_id: str
    game_index: int = Field(ge=0)
    played_at: UtcDatetime = Field(default_factory=utcnow)

    player_a_id: str
    player_b_id: str
    player_c_id: str
    player_a_name: str
    player_b_name: str
    player_c_name: str

    bombs: int = 0
    bid_a: int = 0  # 0-3
    bid_b: int = 0
    bid_c: int = 0
    double_a: bool = False
    double_b: bool = False
    double_c: bool = False
    spring: Optional[bool] = None
    landlord_won: bool
    landlord: int = Field(ge=1, le=3)  # 1=A, 2=B, 3=C

    score_a: int
    score_b: int
    score_c: int

    first_bidder: Optional[int] = None  # 0=A, 1=B, 2=C

    @property
    def is_spring(self) -> bool:
        return bool(self.spring)

    @property
    def first_bidder_index(self) -> int:
        return self.first_bidder or 0


# ---------- Pending Operation Models ----------

class OperationType(str, enum.Enum):
    """Kinds of remote mutation held in the pending log."""
    CREATE_MATCH = "createMatch"
    UPDATE_MATCH = "updateMatch"
    DELETE_MATCH = "deleteMatch"
    CREATE_PLAYER = "createPlayer"
    UPDATE_PLAYER = "updatePlayer"
    DELETE_PLAYER = "deletePlayer"
    CREATE_GAME_RECORDS = "createGameRecords"
    UPDATE_GAME_RECORDS = "updateGameRecords"
    DELETE_GAME_RECORDS = "deleteGameRecords"


class OperationStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    FAILED = "failed"
    COMPLETED = "completed"


UNCONFIRMED_STATUSES = (
    OperationStatus.PENDING,
    OperationStatus.IN_PROGRESS,
    OperationStatus.FAILED,
)


class PendingOperation(Document):
    """A remote mutation not yet confirmed by the remote store."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: OperationType
    created_at: float = Field(default_factory=time.time)
    status: OperationStatus = OperationStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[float] = None
    payload: str  # JSON text of one of the payload models below
    local_id: Optional[str] = None
    depends_on: Optional[list[str]] = None


class MatchPayload(Document):
    """Payload for createMatch / updateMatch."""
    match: Match
    game_records: list[GameRecord] = []


class GameRecordsPayload(Document):
    """Payload for createGameRecords / updateGameRecords / deleteGameRecords."""
    match_id: str
    game_records: list[GameRecord] = []


class MatchDeletePayload(Document):
    match_id: str


class PlayerDeletePayload(Document):
    player_id: str
