# ============================================================
# machine.py — Check-in / check-out state machine
# ------------------------------------------------------------
#   available --check_in-->  in-use(holder)
#   in-use    --check_out--> available   (tokens deducted)
#   *         --force_release--> available (admin, no deduction)
#
# No lock is held across holders. Each transition:
#   1. re-reads the resource (never trusts a cached snapshot)
#   2. checks its preconditions
#   3. issues ONE conditional UPDATE guarded by the status / holder
#      it just observed, plus the audit insert, in one commit
# If the guard no longer matches, the loser gets StateConflictError
# and nothing is written.
# ============================================================
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case
from sqlmodel import Session

from rota.config import BOOTSTRAP_OPEN, LOCAL_TZ
from rota.errors import (
    AccessDeniedError,
    LimitExceededError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from rota.feed import ADD, UPDATE, ChangeFeed
from rota.gate import AccessDecision, evaluate_access
from rota.models import (
    AVAILABLE,
    CHECK_IN,
    CHECK_OUT,
    FORCE_RELEASE,
    IN_USE,
    MAX_TOKENS,
    Resource,
    ResourceCreate,
    ResourceCredentials,
    UsageLogEntry,
    as_utc,
    utcnow,
)
from rota.repository import ResourceRepository, ScheduleRepository, UsageLogRepository

log = logging.getLogger(__name__)

EDITABLE_FIELDS = {"name", "remaining_tokens", "replenish_amount", "next_refresh_date", "username", "password"}


@dataclass(frozen=True)
class Holder:
    id: str
    name: str = ""
    is_admin: bool = False

    @property
    def label(self) -> str:
        return self.name or self.id


class ResourceStateMachine:
    def __init__(
        self,
        session: Session,
        feed: Optional[ChangeFeed] = None,
        bootstrap_open: bool = BOOTSTRAP_OPEN,
        tz=LOCAL_TZ,
        clock=utcnow,
    ):
        self.session = session
        self.resources = ResourceRepository(session)
        self.blocks = ScheduleRepository(session)
        self.usage = UsageLogRepository(session)
        self.feed = feed or ChangeFeed()
        self.bootstrap_open = bootstrap_open
        self.tz = tz
        self.clock = clock

    def _require(self, resource_id: int) -> Resource:
        r = self.resources.get(resource_id)
        if not r:
            raise NotFoundError(f"resource {resource_id} not found")
        return r

    def _evaluate(self, resource_id: int, holder: Holder, now: datetime) -> AccessDecision:
        return evaluate_access(self.blocks.list(), resource_id, holder.id, now, self.bootstrap_open, self.tz)

    # Commit the conditional write + audit entry, then notify.
    def _finish(self, resource_id: int, entry: Optional[UsageLogEntry]) -> Resource:
        self.session.commit()
        updated = self.resources.get(resource_id)
        self.feed.emit("resource", UPDATE, updated)
        if entry is not None:
            self.session.refresh(entry)
            self.feed.emit("usage_log", ADD, entry)
        return updated

    # ------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------
    def create_resource(self, data: ResourceCreate) -> Resource:
        r = Resource.model_validate(data)
        r.status = AVAILABLE
        r.holder_id = r.holder_name = None
        created = self.resources.create(r)
        log.info("resource %s (%s) created", created.id, created.name)
        self.feed.emit("resource", ADD, created)
        return created

    def admin_edit(self, resource_id: int, fields) -> Resource:
        """
        Write name / tokens / replenish amount / refresh date / credentials
        directly. Status and holder are never touched and no audit entry is
        written: this is not a check-in or check-out.
        """
        data = fields.model_dump(exclude_unset=True) if hasattr(fields, "model_dump") else dict(fields)
        data = {k: v for k, v in data.items() if v is not None}
        unknown = set(data) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"fields not editable: {', '.join(sorted(unknown))}")
        for key in ("remaining_tokens", "replenish_amount"):
            if key in data and not 0 <= data[key] <= MAX_TOKENS:
                raise ValidationError(f"{key} must be between 0 and {MAX_TOKENS}")
        if "name" in data and not data["name"].strip():
            raise ValidationError("name must not be empty")

        r = self._require(resource_id)
        updated = self.resources.update(r, data)
        log.info("resource %s edited: %s", resource_id, sorted(data))
        self.feed.emit("resource", UPDATE, updated)
        return updated

    def force_release(self, resource_id: int, admin: Optional[Holder] = None) -> Resource:
        """
        Put the resource back to available whoever holds it, without
        deducting tokens. Used when a holder forgot to check out. The
        displaced holder gets a `force-release` audit entry.
        """
        r = self._require(resource_id)
        displaced_id, displaced_name, name = r.holder_id, r.holder_name, r.name
        self.resources.transition(resource_id, {
            "status": AVAILABLE,
            "holder_id": None,
            "holder_name": None,
            "session_block_id": None,
            "session_token_limit": None,
        })
        entry = None
        if displaced_id:
            entry = self.usage.append(UsageLogEntry(
                timestamp=as_utc(self.clock()),
                holder_id=displaced_id,
                holder_name=displaced_name or "",
                resource_id=resource_id,
                resource_name=name,
                action=FORCE_RELEASE,
            ))
        log.warning(
            "resource %s force-released by %s (was held by %s)",
            resource_id, admin.label if admin else "admin", displaced_name or displaced_id or "nobody",
        )
        return self._finish(resource_id, entry)

    # ------------------------------------------------------------
    # Holder transitions
    # ------------------------------------------------------------
    def access_for(self, resource_id: int, holder: Holder, now: Optional[datetime] = None) -> AccessDecision:
        self._require(resource_id)
        return self._evaluate(resource_id, holder, now or self.clock())

    def check_in(self, resource_id: int, holder: Holder, now: Optional[datetime] = None) -> Resource:
        now = now or self.clock()
        r = self._require(resource_id)
        name = r.name
        if r.status != AVAILABLE:
            raise StateConflictError(f"{name} is already in use by {r.holder_name or r.holder_id}")

        decision = self._evaluate(resource_id, holder, now)
        if not decision.allowed:
            log.info("check-in denied: %s has no active block on resource %s", holder.id, resource_id)
            raise AccessDeniedError(f"{holder.label} has no scheduled block on {name} right now")

        block = decision.active_block
        won = self.resources.transition(
            resource_id,
            {
                "status": IN_USE,
                "holder_id": holder.id,
                "holder_name": holder.name,
                "session_block_id": block.id if block else None,
                "session_token_limit": block.token_limit if block else None,
            },
            expected_status=AVAILABLE,
        )
        if not won:
            self.session.rollback()
            log.info("check-in race lost by %s on resource %s", holder.id, resource_id)
            raise StateConflictError(f"{name} is no longer available")

        entry = self.usage.append(UsageLogEntry(
            timestamp=as_utc(now),
            holder_id=holder.id,
            holder_name=holder.name,
            resource_id=resource_id,
            resource_name=name,
            action=CHECK_IN,
        ))
        log.info("%s checked in to resource %s (block %s)", holder.id, resource_id, block.id if block else None)
        return self._finish(resource_id, entry)

    def check_out(self, resource_id: int, holder: Holder, tokens_used: int, now: Optional[datetime] = None) -> Resource:
        now = now or self.clock()
        if tokens_used is None or not 0 <= tokens_used <= MAX_TOKENS:
            raise ValidationError(f"tokens_used must be a number between 0 and {MAX_TOKENS}")

        r = self._require(resource_id)
        name = r.name
        if r.status != IN_USE or r.holder_id != holder.id:
            raise StateConflictError(f"{name} is not checked in by {holder.label}")

        # ceiling of the block active at check-in, else of the block active now
        limit = r.session_token_limit
        if limit is None:
            active = self._evaluate(resource_id, holder, now).active_block
            limit = active.token_limit if active else None
        if limit is not None and tokens_used > limit:
            raise LimitExceededError(f"cannot use more than {limit} tokens in this scheduled session")

        remaining = case(
            (Resource.remaining_tokens > tokens_used, Resource.remaining_tokens - tokens_used),
            else_=0,
        )
        won = self.resources.transition(
            resource_id,
            {
                "status": AVAILABLE,
                "holder_id": None,
                "holder_name": None,
                "session_block_id": None,
                "session_token_limit": None,
                "remaining_tokens": remaining,
            },
            expected_status=IN_USE,
            expected_holder_id=holder.id,
        )
        if not won:
            self.session.rollback()
            log.info("check-out by %s on resource %s found a different holder", holder.id, resource_id)
            raise StateConflictError(f"{name} is no longer checked in by {holder.label}")

        entry = self.usage.append(UsageLogEntry(
            timestamp=as_utc(now),
            holder_id=holder.id,
            holder_name=holder.name or r.holder_name or "",
            resource_id=resource_id,
            resource_name=name,
            action=CHECK_OUT,
            tokens_used=tokens_used,
        ))
        log.info("%s checked out of resource %s using %s tokens", holder.id, resource_id, tokens_used)
        return self._finish(resource_id, entry)

    def credentials(self, resource_id: int, holder: Holder) -> ResourceCredentials:
        r = self._require(resource_id)
        if r.status != IN_USE or r.holder_id != holder.id:
            raise AccessDeniedError(f"credentials of {r.name} are only shown to its current holder")
        return ResourceCredentials(resource_id=r.id, username=r.username, password=r.password)
