from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from categories import CategoryRegistry, get_category_registry
from config import get_settings
from models import Cost, MonthlyReport, RequestLog, User
from periods import PeriodKind, classify_period, local_now, month_window
from schemas import CostIn, UserIn

logger = logging.getLogger(__name__)

MAX_LOG_LIMIT = 1000

# dialects with a native INSERT ... ON CONFLICT DO UPDATE
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def amount_to_cents(value: float) -> int:
    cents = (Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def cents_to_amount(cents: int) -> float:
    return cents / 100


class UserNotFound(ValueError):
    pass


class UserAlreadyExists(ValueError):
    pass


class CostPeriodClosed(ValueError):
    pass


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[User]:
        return self.session.scalars(select(User).order_by(User.id.asc())).all()

    def exists(self, user_id: int) -> bool:
        stmt = select(func.count(User.id)).where(User.id == user_id)
        return (self.session.execute(stmt).scalar_one() or 0) > 0

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise UserNotFound("user not found")
        return user

    def create(self, data: UserIn) -> User:
        if self.session.get(User, data.id):
            raise UserAlreadyExists("user already exists")
        user = User(
            id=data.id,
            first_name=data.first_name,
            last_name=data.last_name,
            birthday=data.birthday,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            # lost a race against a concurrent create for the same id
            self.session.rollback()
            raise UserAlreadyExists("user already exists") from exc
        self.session.refresh(user)
        return user

    def total_for(self, user_id: int) -> float:
        cents = int(
            self.session.execute(
                select(func.coalesce(func.sum(Cost.amount_cents), 0)).where(
                    Cost.user_id == user_id
                )
            ).scalar_one()
            or 0
        )
        return cents_to_amount(cents)


class CostService:
    def __init__(
        self, session: Session, registry: Optional[CategoryRegistry] = None
    ) -> None:
        self.session = session
        self.registry = registry or get_category_registry()

    def create(self, data: CostIn, *, now: Optional[datetime] = None) -> Cost:
        if not UserService(self.session).exists(data.userid):
            raise UserNotFound("user not found")
        category = self.registry.normalize(data.category)

        amount_cents = amount_to_cents(data.sum)
        if amount_cents <= 0:
            raise ValueError("sum must be at least 0.01")

        now = now or local_now()
        occurred_at = data.created_at or now
        if occurred_at.tzinfo is not None:
            tz = ZoneInfo(get_settings().timezone)
            occurred_at = occurred_at.astimezone(tz).replace(tzinfo=None)

        kind = classify_period(occurred_at.year, occurred_at.month, today=now.date())
        if kind == PeriodKind.past:
            raise CostPeriodClosed("past month costs are not allowed")
        if kind == PeriodKind.future:
            raise CostPeriodClosed(
                "future month costs are not allowed: reports for months other "
                "than the current one are cached once generated"
            )

        cost = Cost(
            user_id=data.userid,
            description=data.description,
            category=category,
            amount_cents=amount_cents,
            created_at=occurred_at,
        )
        self.session.add(cost)
        self.session.commit()
        self.session.refresh(cost)
        return cost


class MonthlyAggregator:
    """Builds the category-partitioned report payload for one user and month.

    The payload lists every registry category exactly once, in registry order,
    as a single-key object. Items inside a category keep timestamp order with
    ties broken by insertion order.
    """

    def __init__(self, session: Session, registry: CategoryRegistry) -> None:
        self.session = session
        self.registry = registry

    def aggregate(self, user_id: int, year: int, month: int) -> dict[str, object]:
        start, end = month_window(year, month)
        rows = self.session.scalars(
            select(Cost)
            .where(
                Cost.user_id == user_id,
                Cost.created_at >= start,
                Cost.created_at < end,
            )
            .order_by(Cost.created_at.asc(), Cost.id.asc())
        ).all()

        by_category: dict[str, list[dict[str, object]]] = {
            name: [] for name in self.registry
        }
        for cost in rows:
            bucket = by_category.get(cost.category)
            if bucket is None:
                logger.debug(
                    f"report_skip_unregistered: cost={cost.id} category={cost.category}"
                )
                continue
            bucket.append(
                {
                    "sum": cents_to_amount(cost.amount_cents),
                    "description": cost.description,
                    "day": cost.created_at.day,
                }
            )

        return {
            "userid": user_id,
            "year": year,
            "month": month,
            "costs": [{name: by_category[name]} for name in self.registry],
        }


class ReportSource(str, Enum):
    live = "live"
    cache = "cache"
    computed = "computed"


@dataclass(frozen=True)
class MaterializedReport:
    source: ReportSource
    payload: dict[str, object]


class ReportService:
    """Answers monthly report requests, materializing non-current periods.

    The current month is always aggregated live and never stored. Any other
    month is read from the report cache, or aggregated once and upserted on
    the unique (user, year, month) key.
    """

    def __init__(
        self,
        session: Session,
        registry: Optional[CategoryRegistry] = None,
        *,
        strict_cache_writes: Optional[bool] = None,
        aggregator: Optional[MonthlyAggregator] = None,
    ) -> None:
        self.session = session
        self.registry = registry or get_category_registry()
        self.aggregator = aggregator or MonthlyAggregator(session, self.registry)
        if strict_cache_writes is None:
            strict_cache_writes = get_settings().report_cache_strict
        self.strict_cache_writes = strict_cache_writes

    def get_report(
        self,
        user_id: int,
        year: int,
        month: int,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        return self.resolve(user_id, year, month, today=today).payload

    def resolve(
        self,
        user_id: int,
        year: int,
        month: int,
        *,
        today: Optional[date] = None,
    ) -> MaterializedReport:
        kind = classify_period(year, month, today=today)
        if kind == PeriodKind.current:
            payload = self.aggregator.aggregate(user_id, year, month)
            result = MaterializedReport(ReportSource.live, payload)
        else:
            cached = self.cached(user_id, year, month)
            if cached is not None:
                result = MaterializedReport(ReportSource.cache, cached.payload)
            else:
                payload = self.aggregator.aggregate(user_id, year, month)
                self._store(user_id, year, month, payload)
                result = MaterializedReport(ReportSource.computed, payload)

        logger.info(
            f"report_resolved: user={user_id} period={year:04d}-{month:02d} "
            f"kind={kind.value} source={result.source.value}"
        )
        return result

    def cached(self, user_id: int, year: int, month: int) -> Optional[MonthlyReport]:
        return self.session.scalar(
            select(MonthlyReport)
            .where(
                MonthlyReport.user_id == user_id,
                MonthlyReport.year == year,
                MonthlyReport.month == month,
            )
            .execution_options(populate_existing=True)
        )

    def purge(self, user_id: Optional[int] = None) -> int:
        stmt = delete(MonthlyReport)
        if user_id is not None:
            stmt = stmt.where(MonthlyReport.user_id == user_id)
        result = self.session.execute(stmt)
        self.session.commit()
        logger.info(f"report_cache_purged: user={user_id} rows={result.rowcount}")
        return result.rowcount

    def _store(
        self, user_id: int, year: int, month: int, payload: dict[str, object]
    ) -> None:
        try:
            self._upsert(user_id, year, month, payload)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            if self.strict_cache_writes:
                raise
            logger.exception(
                f"report_cache_write_failed: user={user_id} "
                f"period={year:04d}-{month:02d}"
            )
            return
        logger.info(
            f"report_materialized: user={user_id} period={year:04d}-{month:02d}"
        )

    def _upsert(
        self, user_id: int, year: int, month: int, payload: dict[str, object]
    ) -> None:
        values = {
            "user_id": user_id,
            "year": year,
            "month": month,
            "payload": payload,
            "generated_at": datetime.utcnow(),
        }
        dialect = self.session.get_bind().dialect.name
        dialect_insert = _UPSERT_INSERTS.get(dialect)
        if dialect_insert is None:
            self._upsert_portable(values)
            return

        stmt = dialect_insert(MonthlyReport).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "year", "month"],
            set_={
                "payload": stmt.excluded.payload,
                "generated_at": stmt.excluded.generated_at,
            },
        )
        self.session.execute(stmt)

    def _upsert_portable(self, values: dict[str, object]) -> None:
        try:
            with self.session.begin_nested():
                self.session.execute(insert(MonthlyReport).values(**values))
        except IntegrityError:
            self.session.execute(
                update(MonthlyReport)
                .where(
                    MonthlyReport.user_id == values["user_id"],
                    MonthlyReport.year == values["year"],
                    MonthlyReport.month == values["month"],
                )
                .values(payload=values["payload"], generated_at=values["generated_at"])
            )


class RequestLogService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def write(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        duration_ms: int,
        endpoint: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RequestLog:
        entry = RequestLog(
            method=method,
            path=path[:2048],
            status_code=status_code,
            duration_ms=duration_ms,
            endpoint=endpoint,
            ip=ip,
            user_agent=(user_agent or "")[:512],
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def list_recent(self, limit: int = MAX_LOG_LIMIT) -> list[RequestLog]:
        limit = min(max(limit, 1), MAX_LOG_LIMIT)
        stmt = (
            select(RequestLog)
            .order_by(RequestLog.created_at.desc(), RequestLog.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()


@dataclass(frozen=True)
class ResetSummary:
    user_id: int
    created_user: bool
    users: int
    costs: int
    reports: int
    logs: int
    dry_run: bool


class MaintenanceService:
    """Resets the store to a single kept user.

    Every other user, and all costs, cached reports and request logs, are
    deleted in one transaction. With ``dry_run`` only the counts are returned.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _count(self, model, *criteria) -> int:
        stmt = select(func.count()).select_from(model).where(*criteria)
        return self.session.execute(stmt).scalar_one()

    def reset(self, keep: UserIn, *, dry_run: bool = False) -> ResetSummary:
        missing = self.session.get(User, keep.id) is None
        summary = ResetSummary(
            user_id=keep.id,
            created_user=missing,
            users=self._count(User, User.id != keep.id),
            costs=self._count(Cost),
            reports=self._count(MonthlyReport),
            logs=self._count(RequestLog),
            dry_run=dry_run,
        )
        if dry_run:
            logger.info(f"store_reset_planned: {summary}")
            return summary

        self.session.execute(delete(Cost))
        self.session.execute(delete(MonthlyReport))
        self.session.execute(delete(RequestLog))
        self.session.execute(delete(User).where(User.id != keep.id))
        if missing:
            self.session.add(
                User(
                    id=keep.id,
                    first_name=keep.first_name,
                    last_name=keep.last_name,
                    birthday=keep.birthday,
                )
            )
        self.session.commit()
        logger.info(f"store_reset: {summary}")
        return summary
