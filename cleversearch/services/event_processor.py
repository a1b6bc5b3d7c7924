"""
Event Processor — per-site buffers → tracker_data + page_analytics.

Runs inside the API process.  ``start()`` drains once immediately and then
every ``interval_ms`` (5 h by default); ``process_now()`` triggers an
extra cycle on demand (admin endpoint).  Only one cycle runs at a time:
a manual trigger while a drain is in flight is refused with a warning.

Each site is drained in batches of ``batch_size``.  A batch is removed
from the buffer once it has been handled, whether or not its database
writes succeeded — a poisoned batch must never block the queue behind it.
Failures are isolated per page, per batch and per site.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cleversearch.models.site import Site
from cleversearch.models.tracking import PageAnalytics, TrackerRecord
from cleversearch.schemas import EventType
from cleversearch.services.buffer_store import BatchDrainer

logger = logging.getLogger("tracker.events")


# ─────────────────────────────────────────────────────────────────────
# results
# ─────────────────────────────────────────────────────────────────────

@dataclass
class BatchResult:
    processed: int = 0
    skipped: int = 0
    error: Optional[str] = None

    def add(self, other: "BatchResult") -> None:
        self.processed += other.processed
        self.skipped += other.skipped


@dataclass
class PageAggregate:
    """Page views for one (site, URL, day) folded out of a batch."""
    site_id: str
    page_url: str
    visit_date: str
    page_views: int = 0
    load_times: list[float] = field(default_factory=list)
    content_injected: bool = False
    content_types: set[str] = field(default_factory=set)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.site_id, self.page_url, self.visit_date)

    @property
    def avg_load_time(self) -> Optional[int]:
        if not self.load_times:
            return None
        return round(sum(self.load_times) / len(self.load_times))


@dataclass
class DrainReport:
    sites: int = 0
    processed: int = 0
    skipped: int = 0
    failed_sites: list[str] = field(default_factory=list)
    duration_ms: int = 0
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


# ─────────────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────────────

def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch milliseconds → aware UTC datetime."""
    if value in (None, ""):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def is_valid_event(event: Any) -> bool:
    return isinstance(event, dict) and bool(event.get("pageUrl")) and bool(event.get("eventType"))


def _number(value: Any) -> Optional[float]:
    """Finite non-negative float, else None."""
    if isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(parsed) or parsed < 0:
        return None
    return parsed


def _content_types(event_data: dict) -> set[str]:
    raw = event_data.get("contentTypesInjected") or event_data.get("contentTypes") or []
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)):
        return set()
    return {str(t) for t in raw if t}


def _to_record(site_id: str, event: dict, fallback_ts: datetime) -> dict:
    event_data = event.get("eventData")
    return {
        "site_id": site_id,
        "page_url": str(event["pageUrl"])[:1024],
        "event_type": str(event["eventType"])[:64],
        "event_data": event_data if isinstance(event_data, dict) else {},
        "session_id": event.get("sessionId"),
        "anonymous_user_id": event.get("anonymousUserId"),
        "user_agent": str(event.get("userAgent") or "unknown")[:500],
        "ip_address": str(event.get("ipAddress") or "unknown")[:45],
        "referrer": str(event.get("referrer") or "")[:1024],
        "timestamp": parse_timestamp(event.get("timestamp")) or fallback_ts,
    }


def merge_load_time(current: Optional[int], batch_avg: Optional[int]) -> Optional[int]:
    """Running average: mean of the stored value and this batch's average."""
    if current and batch_avg:
        return round((current + batch_avg) / 2)
    return batch_avg or current


# ─────────────────────────────────────────────────────────────────────
# processor
# ─────────────────────────────────────────────────────────────────────

class EventProcessor:
    """Drains every site's buffer into the database on a fixed interval."""

    def __init__(
        self,
        buffer: BatchDrainer,
        session_factory: async_sessionmaker[AsyncSession],
        interval_ms: int,
        batch_size: int = 100,
    ):
        self.buffer = buffer
        self.session_factory = session_factory
        self.interval_ms = interval_ms
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None
        self._processing = False
        self.last_report: Optional[DrainReport] = None

    # ── lifecycle ──

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_processing(self) -> bool:
        return self._processing

    def start(self) -> None:
        if self.is_running:
            logger.warning("Event processor already running")
            return
        self._task = asyncio.create_task(self._run_forever(), name="event-processor")
        logger.info("⏱️ Event processor started (every %d ms, batch %d)", self.interval_ms, self.batch_size)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("🛑 Event processor stopped")

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.process_now()
                await asyncio.sleep(self.interval_ms / 1000)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Event processor cycle error: %s", e)
                await asyncio.sleep(self.interval_ms / 1000)

    def get_stats(self) -> dict:
        return {
            "is_processing": self.is_processing,
            "is_running": self.is_running,
            "interval_ms": self.interval_ms,
            "batch_size": self.batch_size,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    # ── cycle ──

    async def process_now(self) -> Optional[DrainReport]:
        """Run one drain cycle unless one is already in flight."""
        if self._processing:
            logger.warning("⚠️ Drain already in progress — manual trigger ignored")
            return None
        return await self.process_all_sites()

    async def _site_ids(self) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(Site.id))
            return [row[0] for row in result.all()]

    async def process_all_sites(self) -> Optional[DrainReport]:
        if self._processing:
            logger.warning("⚠️ Drain already in progress — skipping cycle")
            return None

        self._processing = True
        started = time.monotonic()
        report = DrainReport()
        try:
            site_ids = await self._site_ids()
            report.sites = len(site_ids)

            outcomes = await asyncio.gather(
                *(self.process_site_events(site_id) for site_id in site_ids),
                return_exceptions=True,
            )
            for site_id, outcome in zip(site_ids, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error("❌ Drain for site %s failed: %s", site_id, outcome)
                    report.failed_sites.append(site_id)
                    continue
                report.processed += outcome.processed
                report.skipped += outcome.skipped
                if outcome.error:
                    report.failed_sites.append(site_id)
        except Exception as e:
            logger.error("❌ Drain cycle failed: %s", e)
        finally:
            report.duration_ms = int((time.monotonic() - started) * 1000)
            report.finished_at = datetime.now(timezone.utc)
            self.last_report = report
            self._processing = False

        logger.info(
            "📊 Drain complete — %d sites, %d events processed, %d skipped, %d failed sites (%d ms)",
            report.sites, report.processed, report.skipped, len(report.failed_sites), report.duration_ms,
        )
        return report

    async def process_site_events(self, site_id: str) -> BatchResult:
        """Drain one site's buffer batch by batch until it runs dry."""
        total = BatchResult()
        try:
            while True:
                batch = await self.buffer.pop_batch(site_id, self.batch_size)
                if not batch:
                    break

                try:
                    total.add(await self.process_batch(site_id, batch))
                except Exception as e:
                    logger.error("❌ Batch for site %s failed: %s", site_id, e)
                    total.error = str(e)
                finally:
                    await self.buffer.remove_batch(site_id, len(batch))

                if len(batch) < self.batch_size:
                    break
        except Exception as e:
            logger.error("❌ Error draining site %s: %s", site_id, e)
            total.error = str(e)

        if total.processed or total.skipped:
            logger.info(
                "✅ Site %s: %d events processed, %d skipped",
                site_id, total.processed, total.skipped,
            )
        return total

    async def process_batch(self, site_id: str, events: list[dict]) -> BatchResult:
        drained_at = datetime.now(timezone.utc)
        visit_day = drained_at.strftime("%Y-%m-%d")
        records: list[dict] = []
        aggregates: dict[tuple[str, str, str], PageAggregate] = {}
        skipped = 0

        for event in events:
            if not is_valid_event(event):
                skipped += 1
                continue

            record = _to_record(site_id, event, drained_at)
            records.append(record)

            if record["event_type"] != EventType.PAGE_VIEW:
                continue

            key = (site_id, record["page_url"], visit_day)
            agg = aggregates.get(key)
            if agg is None:
                agg = aggregates[key] = PageAggregate(site_id, record["page_url"], visit_day)

            agg.page_views += 1
            event_data = record["event_data"]
            load_time = _number(event_data.get("loadTime"))
            if load_time is not None:
                agg.load_times.append(load_time)
            if event_data.get("contentInjected"):
                agg.content_injected = True
            agg.content_types |= _content_types(event_data)

        if skipped:
            logger.warning("Skipped %d invalid events for site %s", skipped, site_id)

        if records:
            try:
                async with self.session_factory() as session:
                    await session.execute(insert(TrackerRecord), records)
                    await session.commit()
                logger.debug("Inserted %d tracker records for site %s", len(records), site_id)
            except Exception as e:
                logger.error("❌ Tracker record insert failed for site %s (%d rows): %s",
                             site_id, len(records), e)

        if aggregates:
            await self.update_batch_analytics(list(aggregates.values()))

        return BatchResult(processed=len(records), skipped=skipped)

    # ── analytics ──

    async def update_batch_analytics(self, aggregates: list[PageAggregate]) -> None:
        outcomes = await asyncio.gather(
            *(self.update_page_analytics(agg) for agg in aggregates),
            return_exceptions=True,
        )
        for agg, outcome in zip(aggregates, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("❌ Analytics merge failed for %s (%s): %s",
                             agg.page_url, agg.visit_date, outcome)

    async def update_page_analytics(self, agg: PageAggregate) -> None:
        try:
            async with self.session_factory() as session:
                existing = await self._find_analytics(session, agg)
                if existing is not None:
                    await self._merge(session, existing, agg)
                    return

                session.add(PageAnalytics(
                    site_id=agg.site_id,
                    page_url=agg.page_url,
                    visit_date=agg.visit_date,
                    page_views=agg.page_views,
                    unique_visitors=1,
                    load_time_ms=agg.avg_load_time,
                    content_injected=agg.content_injected,
                    content_types_injected=sorted(agg.content_types),
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost an insert race for the same day; fold into the winner's row
                    await session.rollback()
                    existing = await self._find_analytics(session, agg)
                    if existing is None:
                        raise
                    await self._merge(session, existing, agg)
        except Exception as e:
            logger.error("❌ Failed to update analytics for %s on %s: %s",
                         agg.page_url, agg.visit_date, e)

    @staticmethod
    async def _find_analytics(session: AsyncSession, agg: PageAggregate) -> Optional[PageAnalytics]:
        result = await session.execute(
            select(PageAnalytics).where(
                PageAnalytics.site_id == agg.site_id,
                PageAnalytics.page_url == agg.page_url,
                PageAnalytics.visit_date == agg.visit_date,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _merge(session: AsyncSession, current: PageAnalytics, agg: PageAggregate) -> None:
        content_types = set(current.content_types_injected or []) | agg.content_types
        await session.execute(
            update(PageAnalytics)
            .where(PageAnalytics.id == current.id)
            .values(
                page_views=PageAnalytics.page_views + agg.page_views,
                load_time_ms=merge_load_time(current.load_time_ms, agg.avg_load_time),
                content_injected=bool(current.content_injected or agg.content_injected),
                content_types_injected=sorted(content_types),
                updated_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
