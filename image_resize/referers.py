"""
Referer tracking and per-domain access gate.

Every resize request bumps a per-day counter for the referring domain. A
domain can be disabled, which makes the resize endpoint refuse to fetch new
images on its behalf (cached renditions are still served).
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional
from urllib.parse import urlparse

from sqlalchemy import desc, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import sessionmaker

from .retry import BackoffPolicy
from .store import RefererRecord

logger = logging.getLogger(__name__)

DIRECT_DOMAIN = "direct"
HIDDEN_DOMAIN = "hidden"
UNKNOWN_DOMAIN = "unknown"

SENTINEL_DOMAINS = frozenset({DIRECT_DOMAIN, HIDDEN_DOMAIN, UNKNOWN_DOMAIN})


@dataclass(frozen=True)
class DomainStat:
    domain: str
    total_count: int
    is_disabled: bool


@dataclass(frozen=True)
class RefererStat:
    domain: str
    date_requested: date
    request_count: int


def extract_base_domain(referer: str) -> str:
    """Reduce a referer header to the domain it was sent from.

    Examples:
        "" -> "direct"
        "https://www.example.com:8443/page" -> "example.com"
        "not a url" -> "hidden"
    """
    if not referer:
        return DIRECT_DOMAIN

    try:
        parsed = urlparse(referer)
        netloc = parsed.netloc
    except ValueError:
        # Unparsable (e.g. broken IPv6 literal): take whatever sits between the 2nd and 3rd slash
        parts = referer.split("/")
        if len(parts) > 2:
            return parts[2].removeprefix("www.")
        return HIDDEN_DOMAIN

    host = netloc.rsplit("@", 1)[-1]
    if not host:
        return HIDDEN_DOMAIN

    host = host.removeprefix("www.")
    host = host.split(":", 1)[0]
    return host or HIDDEN_DOMAIN


class RefererTracker:
    """Owns the referer_tracking table"""

    def __init__(self, session_factory: sessionmaker, retry: Optional[BackoffPolicy] = None,
                 today: Callable[[], date] = date.today):
        self.session_factory = session_factory
        self.retry = retry or BackoffPolicy()
        self.today = today

    def track(self, referer: str) -> None:
        """Count one request for the referer's domain today"""
        domain = extract_base_domain(referer)
        statement = (
            sqlite_insert(RefererRecord)
            .values(base_domain=domain, date_requested=self.today(), request_count=1)
        )
        statement = statement.on_conflict_do_update(
            index_elements=["base_domain", "date_requested"],
            set_={"request_count": RefererRecord.request_count + 1},
        )

        def _write():
            with self.session_factory() as db:
                db.execute(statement)
                db.commit()

        self.retry.run(_write, description="referer tracking")

    def is_disabled(self, domain: str) -> bool:
        query = (
            select(func.count())
            .select_from(RefererRecord)
            .where(RefererRecord.base_domain == domain, RefererRecord.is_disabled.is_(True))
        )

        def _read():
            with self.session_factory() as db:
                return db.execute(query).scalar() or 0

        return self.retry.run(_read, description="domain status check") > 0

    def toggle_disabled(self, domain: str) -> bool:
        """Flip the disabled flag for every record of a domain.

        All records receive the same new value, so the flag stays consistent
        across dates. Sentinel domains must be rejected by the caller.

        Returns:
            The new disabled state.
        """
        disabled = not self.is_disabled(domain)

        def _write():
            with self.session_factory() as db:
                db.execute(
                    update(RefererRecord)
                    .where(RefererRecord.base_domain == domain)
                    .values(is_disabled=disabled)
                )
                db.commit()

        self.retry.run(_write, description="domain toggle")
        logger.info(f"Domain '{domain}' is now {'disabled' if disabled else 'enabled'}")
        return disabled

    def aggregated_stats(self) -> List[DomainStat]:
        """Total requests per domain, busiest first"""
        total_count = func.sum(RefererRecord.request_count).label("total_count")
        query = (
            select(
                RefererRecord.base_domain,
                total_count,
                func.max(RefererRecord.is_disabled).label("is_disabled"),
            )
            .group_by(RefererRecord.base_domain)
            .order_by(desc("total_count"), RefererRecord.base_domain)
        )

        def _read():
            with self.session_factory() as db:
                return db.execute(query).all()

        rows = self.retry.run(_read, description="referer stats")
        return [
            DomainStat(domain=row[0], total_count=int(row[1] or 0), is_disabled=bool(row[2]))
            for row in rows
        ]

    def stats_between(self, start: date, end: date) -> List[RefererStat]:
        """Per-day counters in an inclusive date range, newest day first"""
        query = (
            select(RefererRecord.base_domain, RefererRecord.date_requested, RefererRecord.request_count)
            .where(RefererRecord.date_requested.between(start, end))
            .order_by(desc(RefererRecord.date_requested), desc(RefererRecord.request_count))
        )

        def _read():
            with self.session_factory() as db:
                return db.execute(query).all()

        rows = self.retry.run(_read, description="referer stats")
        return [
            RefererStat(domain=row[0], date_requested=row[1], request_count=row[2])
            for row in rows
        ]
