# ============================================================
# conflicts.py — Weekly block validation and overlap detection
# ------------------------------------------------------------
# Pure functions, no I/O. A "block" is anything exposing
# resource_id, day_of_week, start_time, end_time (and id for
# stored blocks): ScheduleBlock rows, BlockCreate payloads or
# the Candidate tuple below.
# ============================================================
from collections import defaultdict
from typing import Iterable, NamedTuple, Optional

from rota.errors import ValidationError

MINUTES_PER_DAY = 24 * 60
DAYS_OF_WEEK = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class Candidate(NamedTuple):
    resource_id: int
    day_of_week: int
    start_time: int
    end_time: int


def parse_clock(value: str) -> int:
    """'HH:MM' or 'HH:MM:SS' -> minute of day. '24:00' is end of day."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValidationError(f"invalid time {value!r}, expected HH:MM")
    hour, minute = int(parts[0]), int(parts[1])
    if minute > 59 or hour > 24 or (hour == 24 and minute):
        raise ValidationError(f"invalid time {value!r}")
    return hour * 60 + minute


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def validate_block(block):
    if block.resource_id is None:
        raise ValidationError("a resource must be selected")
    if hasattr(block, "holder_id") and not block.holder_id:
        raise ValidationError("a holder must be selected")
    if block.day_of_week not in range(7):
        raise ValidationError(f"day_of_week must be 0..6, got {block.day_of_week}")
    # a block starts inside the day; only its end may be midnight (1440)
    if not 0 <= block.start_time < MINUTES_PER_DAY:
        raise ValidationError(f"start_time must be within the day, got {block.start_time}")
    if not 0 <= block.end_time <= MINUTES_PER_DAY:
        raise ValidationError(f"end_time must be within the day, got {block.end_time}")
    if block.end_time <= block.start_time:
        raise ValidationError("end time must be after start time")
    if hasattr(block, "token_limit") and block.token_limit <= 0:
        raise ValidationError("token_limit must be positive")


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    # half-open: [540, 1020) and [1020, 1080) only touch
    return a_start < b_end and a_end > b_start


def index_blocks(blocks: Iterable) -> dict:
    index = defaultdict(list)
    for b in blocks:
        index[(b.resource_id, b.day_of_week)].append(b)
    return index


def has_conflict(existing, candidate, exclude_id: Optional[int] = None) -> bool:
    """
    True if `candidate` overlaps another block of the same resource on the
    same day. `existing` is either an iterable of blocks or the mapping
    returned by index_blocks(). The block being edited is skipped through
    `exclude_id`.
    """
    if isinstance(existing, dict):
        same_slot = existing.get((candidate.resource_id, candidate.day_of_week), [])
    else:
        same_slot = [
            b for b in existing
            if b.resource_id == candidate.resource_id and b.day_of_week == candidate.day_of_week
        ]
    for b in same_slot:
        if exclude_id is not None and getattr(b, "id", None) == exclude_id:
            continue
        if overlaps(candidate.start_time, candidate.end_time, b.start_time, b.end_time):
            return True
    return False
