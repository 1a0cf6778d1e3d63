# ============================================================
# repository.py — Data access for the rota tables
# ------------------------------------------------------------
# "Repository" pattern over a SQLModel Session: the API routes and
# the state machine never build queries themselves.
#
# Reads always repopulate the identity map (populate_existing) so
# a caller re-validating a precondition sees the committed row and
# not an object cached earlier in the same Session.
# ============================================================
from typing import List, Optional

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, update
from sqlmodel import Session, select

from rota.models import Resource, ScheduleBlock, UsageLogEntry, utcnow


# ResourceRepository
# CRUD on Resource plus the conditional write every transition goes through.
class ResourceRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, r: Resource):
        self.session.add(r)
        self.session.commit()
        self.session.refresh(r)
        return r

    def get(self, resource_id: int) -> Optional[Resource]:
        stmt = select(Resource).where(Resource.id == resource_id).execution_options(populate_existing=True)
        return self.session.exec(stmt).first()

    def list(self) -> List[Resource]:
        stmt = select(Resource).order_by(Resource.name).execution_options(populate_existing=True)
        return list(self.session.exec(stmt).all())

    def update(self, r: Resource, fields: dict):
        for key, value in fields.items():
            setattr(r, key, value)
        r.updated_at = utcnow()
        self.session.add(r)
        self.session.commit()
        self.session.refresh(r)
        return r

    # Single UPDATE ... WHERE id = ? AND status = ? [AND holder_id = ?]
    # Returns True when exactly one row still matched. Does not commit:
    # the caller adds its audit entry to the same transaction first.
    def transition(
        self,
        resource_id: int,
        values: dict,
        expected_status: Optional[str] = None,
        expected_holder_id: Optional[str] = None,
    ) -> bool:
        stmt = update(Resource).where(Resource.id == resource_id)
        if expected_status is not None:
            stmt = stmt.where(Resource.status == expected_status)
        if expected_holder_id is not None:
            stmt = stmt.where(Resource.holder_id == expected_holder_id)
        stmt = stmt.values(**values, updated_at=utcnow()).execution_options(synchronize_session=False)
        result = self.session.exec(stmt)
        return result.rowcount == 1


class ScheduleRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, b: ScheduleBlock):
        self.session.add(b)
        self.session.commit()
        self.session.refresh(b)
        return b

    def get(self, block_id: int) -> Optional[ScheduleBlock]:
        stmt = select(ScheduleBlock).where(ScheduleBlock.id == block_id).execution_options(populate_existing=True)
        return self.session.exec(stmt).first()

    def list(self) -> List[ScheduleBlock]:
        stmt = (
            select(ScheduleBlock)
            .order_by(ScheduleBlock.day_of_week, ScheduleBlock.start_time, ScheduleBlock.id)
            .execution_options(populate_existing=True)
        )
        return list(self.session.exec(stmt).all())

    def update(self, b: ScheduleBlock, fields: dict):
        for key, value in fields.items():
            setattr(b, key, value)
        b.updated_at = utcnow()
        self.session.add(b)
        self.session.commit()
        self.session.refresh(b)
        return b

    def delete(self, block_id: int) -> bool:
        result = self.session.exec(sa_delete(ScheduleBlock).where(ScheduleBlock.id == block_id))
        self.session.commit()
        return result.rowcount > 0

    def count(self) -> int:
        return self.session.exec(select(func.count()).select_from(ScheduleBlock)).one()


# UsageLogRepository
# Append-only: no update / delete is exposed.
class UsageLogRepository:
    def __init__(self, session: Session):
        self.session = session

    # joins the caller's transaction, committed with the state change
    def append(self, entry: UsageLogEntry):
        self.session.add(entry)
        return entry

    def recent(self, limit: int = 50, resource_id: Optional[int] = None, holder_id: Optional[str] = None):
        stmt = select(UsageLogEntry)
        if resource_id is not None:
            stmt = stmt.where(UsageLogEntry.resource_id == resource_id)
        if holder_id is not None:
            stmt = stmt.where(UsageLogEntry.holder_id == holder_id)
        stmt = stmt.order_by(UsageLogEntry.timestamp.desc(), UsageLogEntry.id.desc()).limit(limit)
        return list(self.session.exec(stmt).all())

    def holders(self) -> List[tuple]:
        stmt = select(UsageLogEntry.holder_id, UsageLogEntry.holder_name).distinct()
        return list(self.session.exec(stmt).all())
