# ============================================================
# gate.py — Who may claim which resource, right now
# ------------------------------------------------------------
# A holder may check in to a resource only while one of their
# own weekly blocks on that resource covers "now" (expressed in
# LOCAL_TZ). That block also caps the tokens of the session.
#
# BOOTSTRAP MODE: while zero blocks exist in the whole system and
# the bootstrap flag is on, every holder is allowed with no cap.
# This is a default-open policy meant only to let a fresh install
# collect its first usage history.
# ============================================================
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from rota.config import LOCAL_TZ
from rota.models import ScheduleBlock

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    active_block: Optional[ScheduleBlock] = None
    bootstrap: bool = False


# Naive datetimes are taken as UTC (storage convention), then moved
# to the zone the weekly schedule is written in. Sunday = 0.
def current_slot(now: datetime, tz=LOCAL_TZ) -> Tuple[int, int]:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    day = (local.weekday() + 1) % 7
    return day, local.hour * 60 + local.minute


def is_block_active(block, day: int, minute: int) -> bool:
    return block.day_of_week == day and block.start_time <= minute < block.end_time


def blocks_for_resource(blocks: Iterable, resource_id: int) -> List:
    return [b for b in blocks if b.resource_id == resource_id]


def blocks_for_holder(blocks: Iterable, holder_id: str) -> List:
    return [b for b in blocks if b.holder_id == holder_id]


def blocks_for_day(blocks: Iterable, day_of_week: int) -> List:
    return sorted(
        (b for b in blocks if b.day_of_week == day_of_week),
        key=lambda b: (b.start_time, b.id or 0),
    )


def evaluate_access(
    blocks: Iterable,
    resource_id: int,
    holder_id: str,
    now: datetime,
    bootstrap_open: bool = True,
    tz=LOCAL_TZ,
) -> AccessDecision:
    blocks = list(blocks)
    if not blocks and bootstrap_open:
        log.warning(
            "bootstrap mode: no schedule blocks exist, granting %s access to resource %s without a limit",
            holder_id, resource_id,
        )
        return AccessDecision(allowed=True, bootstrap=True)

    day, minute = current_slot(now, tz)
    matches = sorted(
        (
            b for b in blocks
            if b.resource_id == resource_id and b.holder_id == holder_id and is_block_active(b, day, minute)
        ),
        key=lambda b: (b.day_of_week, b.start_time, b.id or 0),
    )
    # the no-overlap rule leaves at most one; if not, first one wins
    if len(matches) > 1:
        log.warning("overlapping blocks %s for resource %s", [b.id for b in matches], resource_id)
    active = matches[0] if matches else None
    return AccessDecision(allowed=active is not None, active_block=active)
