import threading
from datetime import timedelta

from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from reporting import LibraryReport, ReportRunner


def test_report_counts_and_overdue(catalog, clock):
    lib, books, alice, bob = catalog
    lib.loan_book(books[0], alice)
    clock.advance(days=5)
    lib.loan_book(books[1], bob)
    clock.advance(days=3)

    report = LibraryReport.build(lib.store, now=clock(), loan_period=timedelta(days=7))
    assert report.total_books == 4
    assert report.on_loan == 2
    assert report.available == 2
    assert [o.book_id for o in report.overdue] == [books[0]]
    assert report.overdue[0].borrower_id == alice
    assert report.overdue[0].days_on_loan == 8.0
    assert report.books_per_author == {"Ursula K. Le Guin": 4}


def test_library_builds_report_with_its_clock(catalog, clock):
    lib, books, alice, _ = catalog
    lib.loan_book(books[0], alice)
    clock.advance(days=7)
    assert lib.build_report().unwrap().overdue == []
    clock.advance(seconds=1)
    assert len(lib.build_report().unwrap().overdue) == 1


def test_text_and_html_rendering(memory_lib, clock):
    author = memory_lib.create_author("Tom & Jerry").unwrap()
    memory_lib.create_book("Cat <and> Mouse", author.id).unwrap()
    report = memory_lib.build_report().unwrap()

    text = report.to_text()
    assert text.splitlines()[0] == "Library summary (2024-03-01 09:00 UTC)"
    assert "Total Books: 1" in text
    assert "Available: 1" in text

    rendered = report.to_html()
    assert rendered.startswith("<h1>Library summary</h1>")
    assert "<h2>Overdue</h2><ul></ul>" in rendered
    assert "Tom &amp; Jerry" in rendered

    assert report.to_dict()["books_per_author"] == {"Tom & Jerry": 1}


def test_runner_sends_to_sink(memory_lib):
    sent = []
    runner = ReportRunner(lambda: memory_lib.build_report().unwrap(), sink=sent.append, interval=60)
    report = runner.run_once()
    assert sent == [report]


def test_runner_schedules_interval_job(memory_lib):
    delivered = threading.Event()
    runner = ReportRunner(lambda: memory_lib.build_report().unwrap(), sink=lambda r: delivered.set(), interval=0.05)
    runner.start()
    try:
        job = runner.scheduler.get_job(ReportRunner.JOB_ID)
        assert isinstance(job.trigger, IntervalTrigger)
        assert job.trigger.interval.total_seconds() == 0.05
        assert delivered.wait(5)
    finally:
        runner.stop()
    assert runner.running is False


def test_runner_uses_configured_interval(memory_lib):
    runner = ReportRunner(lambda: memory_lib.build_report().unwrap())
    assert runner.interval == settings.report_interval_seconds


def test_failed_report_does_not_stop_schedule():
    calls = []

    def broken_build():
        calls.append(1)
        raise RuntimeError("catalog offline")

    runner = ReportRunner(broken_build, sink=lambda r: None, interval=60)
    runner._run_job()
    runner._run_job()
    assert len(calls) == 2
