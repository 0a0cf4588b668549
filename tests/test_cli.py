import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

import database
from main import app
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_db(tmp_path, monkeypatch):
    """Point the CLI at a fresh database file and plain output."""
    monkeypatch.setattr(database, "DATABASE_FILE", str(tmp_path / "cli.db"))
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)


@pytest.fixture
def seeded():
    """Add one author, one book and one member through the CLI."""
    assert runner.invoke(app, ["add-author", "Mary Shelley"]).exit_code == 0
    assert runner.invoke(app, ["add-book", "Frankenstein", "1"]).exit_code == 0
    result = runner.invoke(app, ["register", "Victor Reader", "victor@example.com", "--password", "pw"])
    assert result.exit_code == 0


def test_list_no_books():
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_author_and_book():
    result = runner.invoke(app, ["add-author", "Mary Shelley"])
    assert result.exit_code == 0
    assert "Added author #1: Mary Shelley" in result.stdout

    result = runner.invoke(app, ["add-book", "Frankenstein", "1"])
    assert result.exit_code == 0
    assert "Successfully added: #1 Frankenstein" in result.stdout

    result = runner.invoke(app, ["list"])
    assert "#1 - Frankenstein (author 1) [available]" in result.stdout


def test_add_book_for_missing_author_fails():
    result = runner.invoke(app, ["add-book", "Frankenstein", "42"])
    assert result.exit_code == 1
    assert "Error (NotFound)" in result.stdout


def test_show_book(seeded):
    result = runner.invoke(app, ["show", "1"])
    assert result.exit_code == 0
    assert "Book Found" in result.stdout
    assert "Title: Frankenstein" in result.stdout
    assert "Author: Mary Shelley" in result.stdout
    assert "Available" in result.stdout

    missing = runner.invoke(app, ["show", "99"])
    assert missing.exit_code == 1
    assert "Book 99 not found." in missing.stdout


def test_loan_and_return(seeded):
    result = runner.invoke(app, ["loan", "1", "1"])
    assert result.exit_code == 0
    assert "Book #1 'Frankenstein' loaned to user 1." in result.stdout

    assert "on loan to user 1" in runner.invoke(app, ["loans", "1"]).stdout
    assert "No books available." in runner.invoke(app, ["available"]).stdout

    again = runner.invoke(app, ["loan", "1", "1"])
    assert again.exit_code == 1
    assert "Error (AlreadyLoaned)" in again.stdout

    result = runner.invoke(app, ["return", "1", "1"])
    assert result.exit_code == 0
    assert "Book returned on time." in result.stdout
    assert "User 1 holds no books." in runner.invoke(app, ["loans", "1"]).stdout


def test_remove_book_on_loan_is_refused(seeded):
    runner.invoke(app, ["loan", "1", "1"])
    result = runner.invoke(app, ["remove", "1"])
    assert result.exit_code == 1
    runner.invoke(app, ["return", "1", "1"])
    result = runner.invoke(app, ["remove", "1"])
    assert result.exit_code == 0
    assert "Book #1 has been removed." in result.stdout


def test_update_book(seeded):
    result = runner.invoke(app, ["update", "1", "--title", "The Modern Prometheus"])
    assert result.exit_code == 0
    assert "Updated: #1 The Modern Prometheus (author 1)" in result.stdout


def test_stats_json_output(seeded):
    result = runner.invoke(app, ["--output", "json", "stats"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"total_books": 1, "unique_authors": 1, "on_loan": 0, "available": 1}


def test_report(seeded):
    result = runner.invoke(app, ["report"])
    assert result.exit_code == 0
    assert "Total Books: 1" in result.stdout
    assert "Overdue: 0" in result.stdout

    result = runner.invoke(app, ["report", "--html"])
    assert result.stdout.startswith("<h1>Library summary</h1>")


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--host", "127.0.0.1", "--port", "9001"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert args[-4:] == ["--host", "127.0.0.1", "--port", "9001"]
    assert "api:app" in args
