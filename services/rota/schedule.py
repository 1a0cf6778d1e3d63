# ============================================================
# schedule.py — Administration of weekly schedule blocks
# ------------------------------------------------------------
# Create / edit / delete blocks. Before anything is written:
#   1. the block is validated (range, day, limit, selections)
#   2. it is checked against a fresh read of all blocks for an
#      overlap on the same resource and day
# Blocks are admin-only data: plain writes, no conditional update.
# ============================================================
import logging
from typing import Dict, List

from sqlmodel import Session

from rota.conflicts import DAYS_OF_WEEK, Candidate, has_conflict, index_blocks, validate_block
from rota.errors import NotFoundError, ScheduleConflictError
from rota.feed import ADD, DELETE, UPDATE, ChangeFeed
from rota.gate import blocks_for_day, blocks_for_holder
from rota.models import BlockCreate, BlockRead, ScheduleBlock
from rota.repository import ResourceRepository, ScheduleRepository, UsageLogRepository

log = logging.getLogger(__name__)


class ScheduleService:
    def __init__(self, session: Session, feed: ChangeFeed = None):
        self.blocks = ScheduleRepository(session)
        self.resources = ResourceRepository(session)
        self.usage = UsageLogRepository(session)
        self.feed = feed or ChangeFeed()

    def _check(self, data: BlockCreate, exclude_id: int = None) -> str:
        validate_block(data)
        resource = self.resources.get(data.resource_id)
        if not resource:
            raise NotFoundError(f"resource {data.resource_id} not found")
        candidate = Candidate(data.resource_id, data.day_of_week, data.start_time, data.end_time)
        if has_conflict(index_blocks(self.blocks.list()), candidate, exclude_id=exclude_id):
            raise ScheduleConflictError("this time slot conflicts with an existing block for this resource")
        return resource.name

    def list_blocks(self) -> List[ScheduleBlock]:
        return self.blocks.list()

    def blocks_of(self, holder_id: str) -> List[ScheduleBlock]:
        return blocks_for_holder(self.blocks.list(), holder_id)

    def get_block(self, block_id: int) -> ScheduleBlock:
        b = self.blocks.get(block_id)
        if not b:
            raise NotFoundError(f"schedule block {block_id} not found")
        return b

    def create_block(self, data: BlockCreate) -> ScheduleBlock:
        resource_name = self._check(data)
        b = ScheduleBlock.model_validate(data)
        b.resource_name = resource_name
        created = self.blocks.create(b)
        log.info(
            "block %s: resource %s, %s %s-%s for %s",
            created.id, created.resource_id, DAYS_OF_WEEK[created.day_of_week],
            created.start_time, created.end_time, created.holder_id,
        )
        self.feed.emit("schedule_block", ADD, created)
        return created

    def update_block(self, block_id: int, data: BlockCreate) -> ScheduleBlock:
        b = self.get_block(block_id)
        resource_name = self._check(data, exclude_id=block_id)
        fields = data.model_dump()
        fields["resource_name"] = resource_name
        updated = self.blocks.update(b, fields)
        log.info("block %s updated", block_id)
        self.feed.emit("schedule_block", UPDATE, updated)
        return updated

    def delete_block(self, block_id: int):
        b = self.get_block(block_id)
        row = BlockRead.from_block(b)
        if not self.blocks.delete(block_id):
            raise NotFoundError(f"schedule block {block_id} not found")
        log.info("block %s deleted", block_id)
        self.feed.emit("schedule_block", DELETE, row)

    # Blocks grouped per day, Sunday first, each day sorted by start.
    def week_view(self) -> Dict[str, List[BlockRead]]:
        blocks = self.blocks.list()
        return {
            day: [BlockRead.from_block(b) for b in blocks_for_day(blocks, index)]
            for index, day in enumerate(DAYS_OF_WEEK)
        }

    # Everyone who can be picked for a block: holders already scheduled,
    # then anyone seen in the usage log.
    def known_holders(self) -> List[dict]:
        seen = {}
        for b in self.blocks.list():
            if b.holder_id:
                seen.setdefault(b.holder_id, b.holder_name)
        for holder_id, holder_name in self.usage.holders():
            seen.setdefault(holder_id, holder_name)
        return sorted(({"id": k, "name": v or ""} for k, v in seen.items()), key=lambda h: (h["name"], h["id"]))
