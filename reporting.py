"""Periodic catalog summary.

The report only reads the catalog. Delivering it (email, chat, ...) is left
to whatever sink the runner is given; the default sink just logs it.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from book import utcnow
from config import settings
from stores import CatalogStore

logger = logging.getLogger(__name__)


@dataclass
class OverdueLoan:
    book_id: int
    title: str
    borrower_id: int
    days_on_loan: float


@dataclass
class LibraryReport:
    generated_at: datetime
    total_books: int
    on_loan: int
    available: int
    overdue: List[OverdueLoan] = field(default_factory=list)
    books_per_author: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def build(cls, catalog: CatalogStore, now: Optional[datetime] = None,
              loan_period: Optional[timedelta] = None) -> "LibraryReport":
        now = now or utcnow()
        loan_period = loan_period or timedelta(days=settings.loan_period_days)
        books = catalog.list_books()
        authors = {a.id: a.name for a in catalog.list_authors()}

        overdue = []
        per_author: Dict[str, int] = {}
        for book in books:
            name = authors.get(book.author_id, f"Author {book.author_id}")
            per_author[name] = per_author.get(name, 0) + 1
            if book.on_loan and book.loan_date is not None and now - book.loan_date > loan_period:
                overdue.append(OverdueLoan(
                    book_id=book.id,
                    title=book.title,
                    borrower_id=book.borrower_id,
                    days_on_loan=round((now - book.loan_date).total_seconds() / 86400, 1),
                ))

        on_loan = sum(1 for b in books if b.on_loan)
        return cls(
            generated_at=now,
            total_books=len(books),
            on_loan=on_loan,
            available=len(books) - on_loan,
            overdue=overdue,
            books_per_author=dict(sorted(per_author.items())),
        )

    def to_dict(self) -> dict:
        return {
            "generated_at": self.generated_at.isoformat(),
            "total_books": self.total_books,
            "on_loan": self.on_loan,
            "available": self.available,
            "overdue": [vars(o) for o in self.overdue],
            "books_per_author": dict(self.books_per_author),
        }

    def to_text(self) -> str:
        lines = [
            f"Library summary ({self.generated_at:%Y-%m-%d %H:%M} UTC)",
            f"Total Books: {self.total_books}",
            f"On Loan: {self.on_loan}",
            f"Available: {self.available}",
            f"Overdue: {len(self.overdue)}",
        ]
        for loan in self.overdue:
            lines.append(f"  #{loan.book_id} {loan.title} - user {loan.borrower_id}, {loan.days_on_loan} days")
        return "\n".join(lines)

    def to_html(self) -> str:
        rows = "".join(
            f"<tr><td>{html.escape(name)}</td><td>{count}</td></tr>"
            for name, count in self.books_per_author.items()
        )
        overdue = "".join(
            f"<li>#{o.book_id} {html.escape(o.title)} (user {o.borrower_id}, {o.days_on_loan} days)</li>"
            for o in self.overdue
        )
        return (
            "<h1>Library summary</h1>"
            f"<p>Generated {self.generated_at.isoformat()}</p>"
            f"<ul><li>Total books: {self.total_books}</li>"
            f"<li>On loan: {self.on_loan}</li>"
            f"<li>Available: {self.available}</li></ul>"
            f"<h2>Overdue</h2><ul>{overdue}</ul>"
            f"<h2>Books per author</h2><table>{rows}</table>"
        )


def log_sink(report: LibraryReport) -> None:
    logger.info(report.to_text())


class ReportRunner:
    """Builds a report every ``interval`` seconds on a background scheduler."""

    JOB_ID = "library_report"

    def __init__(self, build: Callable[[], LibraryReport],
                 sink: Callable[[LibraryReport], None] = log_sink,
                 interval: Optional[float] = None) -> None:
        self.build = build
        self.sink = sink
        self.interval = settings.report_interval_seconds if interval is None else interval
        self.scheduler = BackgroundScheduler(
            daemon=True,
            timezone="UTC",
            job_defaults={"coalesce": True, "max_instances": 1},
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def run_once(self) -> LibraryReport:
        report = self.build()
        self.sink(report)
        return report

    def _run_job(self) -> None:
        try:
            self.run_once()
        except Exception:
            # one bad run must not stop the schedule
            logger.exception("Library report failed")

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Report scheduler is already running")
            return
        self.scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.JOB_ID,
            name="Library summary report",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Report scheduler started (every {self.interval}s)")

    def stop(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Report scheduler stopped")
