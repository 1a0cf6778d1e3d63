# ============================================================
# models.py — SQLModel data models (rota service)
# ------------------------------------------------------------
# Tables:
#   1. Resource      : a shared account with a token allowance
#   2. ScheduleBlock : a recurring weekly reservation
#   3. UsageLogEntry : append-only audit of every transition
# plus the request / response shapes used by api.py.
# ============================================================
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from rota.conflicts import format_clock, parse_clock

AVAILABLE = "available"
IN_USE = "in-use"

# token counts are stored in 32-bit integer columns
MAX_TOKENS = 2**31 - 1

CHECK_IN = "check-in"
CHECK_OUT = "check-out"
FORCE_RELEASE = "force-release"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# naive values are taken as UTC already
def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ------------------------------------------------------------
# Resource
# ------------------------------------------------------------
# Lifecycle: available <-> in-use, forever. holder_* is set iff the
# resource is in use. session_* remembers the block (and its ceiling)
# that was active when the current holder checked in.
# The credential payload is stored inline and never leaves the
# service except through the holder-only credentials endpoint.
# ------------------------------------------------------------
class ResourceBase(SQLModel):
    name: str
    remaining_tokens: int = Field(default=0, ge=0, le=MAX_TOKENS)
    replenish_amount: int = Field(default=0, ge=0, le=MAX_TOKENS)
    next_refresh_date: date


class Resource(ResourceBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    status: str = Field(default=AVAILABLE, index=True)
    holder_id: Optional[str] = None
    holder_name: Optional[str] = None
    session_block_id: Optional[int] = None
    session_token_limit: Optional[int] = None
    username: str = ""
    password: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ResourceCreate(ResourceBase):
    username: str = ""
    password: str = ""


class ResourceRead(ResourceBase):
    id: int
    status: str
    holder_id: Optional[str] = None
    holder_name: Optional[str] = None
    session_token_limit: Optional[int] = None
    updated_at: datetime


# Admin edit: every field optional, only the ones sent are written
class ResourceUpdate(SQLModel):
    name: Optional[str] = None
    remaining_tokens: Optional[int] = Field(default=None, ge=0, le=MAX_TOKENS)
    replenish_amount: Optional[int] = Field(default=None, ge=0, le=MAX_TOKENS)
    next_refresh_date: Optional[date] = None
    username: Optional[str] = None
    password: Optional[str] = None


class ResourceCredentials(SQLModel):
    resource_id: int
    username: str
    password: str


# ------------------------------------------------------------
# ScheduleBlock
# ------------------------------------------------------------
# day_of_week: 0 = Sunday ... 6 = Saturday
# start_time / end_time: minute of day, half-open [start, end)
# ------------------------------------------------------------
class BlockBase(SQLModel):
    resource_id: Optional[int] = Field(default=None, foreign_key="resource.id", index=True)
    holder_id: Optional[str] = Field(default=None, index=True)
    holder_name: str = ""
    day_of_week: int
    start_time: int
    end_time: int
    token_limit: int = Field(gt=0, le=MAX_TOKENS)


class ScheduleBlock(BlockBase, table=True):
    __tablename__ = "schedule_block"

    id: Optional[int] = Field(default=None, primary_key=True)
    resource_name: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BlockCreate(BlockBase):
    # "09:30" / "09:30:00" are accepted as well as plain minutes
    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _clock(cls, v):
        if isinstance(v, str):
            return parse_clock(v)
        return v


class BlockRead(BlockBase):
    id: int
    resource_name: str
    start_label: str = ""
    end_label: str = ""

    @classmethod
    def from_block(cls, block: ScheduleBlock) -> "BlockRead":
        read = cls.model_validate(block)
        read.start_label = format_clock(block.start_time)
        read.end_label = format_clock(block.end_time)
        return read


# ------------------------------------------------------------
# UsageLogEntry
# ------------------------------------------------------------
# Names are snapshots taken at the time of the event.
# tokens_used is only filled for check-out.
# ------------------------------------------------------------
class UsageLogEntry(SQLModel, table=True):
    __tablename__ = "usage_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    holder_id: str = Field(index=True)
    holder_name: str = ""
    resource_id: int = Field(index=True)
    resource_name: str = ""
    action: str
    tokens_used: Optional[int] = None


class CheckOutRequest(SQLModel):
    tokens_used: int = Field(ge=0, le=MAX_TOKENS)


class AccessRead(SQLModel):
    resource_id: int
    allowed: bool
    bootstrap: bool = False
    active_block: Optional[BlockRead] = None
