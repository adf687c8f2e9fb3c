import json
import logging
import os
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

import main
from main import LibraryManager, app
from utils.ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_lib(lib, monkeypatch):
    # CLI komutları tekil örneği kullanır; testin veritabanına yönlendir
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    LibraryManager._instance = lib
    LibraryManager._db_file_snapshot = None
    yield lib
    LibraryManager.reset()


def _answers(monkeypatch, *values):
    # IntPrompt, Prompt'tan değil PromptBase'den türer; ikisi de aynı sıradan yanıtlanır
    it = iter(values)
    answer = lambda *args, **kwargs: next(it)
    monkeypatch.setattr(main.Prompt, "ask", answer)
    monkeypatch.setattr(main.IntPrompt, "ask", answer)
    return it


def test_list_no_books():
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout

def test_add_book_success(cli_lib):
    result = runner.invoke(app, ["add", "-t", "Dune", "-a", "Frank Herbert", "-y", "1965", "-c", "2"])
    assert result.exit_code == 0
    assert "Kitap eklendi: [1] Dune - Frank Herbert (kopya: 2)" in result.stdout
    assert cli_lib.get_book(1).copies_available == 2

def test_add_book_invalid_year():
    result = runner.invoke(app, ["add", "-t", "Dune", "-a", "Frank Herbert", "--year=-5"])
    assert result.exit_code == 1
    assert "Hata: year must be 0 or more" in result.stdout

def test_list_plain_and_json(cli_lib):
    cli_lib.add_book(title="1984", author="George Orwell", year=1949, genre="Dystopian", copies_available=3)

    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "[1] 1984 (1949) by George Orwell | Dystopian | Copies: 3/3" in result.stdout

    result = runner.invoke(app, ["-o", "json", "list"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["title"] == "1984"

def test_search(cli_lib):
    cli_lib.add_book(title="1984", author="George Orwell", year=1949)
    cli_lib.add_book(title="Clean Code", author="Robert C. Martin", year=2008)

    result = runner.invoke(app, ["search", "martin"])
    assert result.exit_code == 0
    assert "Clean Code" in result.stdout
    assert "1984" not in result.stdout

def test_update_book(cli_lib):
    book = cli_lib.add_book(title="Old Title", author="Author", year=2000)
    result = runner.invoke(app, ["update", str(book.id), "--title", "New Title", "--total", "4"])
    assert result.exit_code == 0
    assert "Kitap güncellendi: [1] New Title - Author (kopya: 4/4)" in result.stdout

def test_update_book_without_fields(cli_lib):
    book = cli_lib.add_book(title="T", author="A", year=2000)
    result = runner.invoke(app, ["update", str(book.id)])
    assert result.exit_code == 1
    assert "Nothing to update" in result.stdout

def test_borrow_and_return(cli_lib):
    book = cli_lib.add_book(title="1984", author="George Orwell", year=1949, copies_available=3)

    result = runner.invoke(app, ["borrow", str(book.id), "Sam", "555", "-c", "2"])
    assert result.exit_code == 0
    assert "Ödünç verildi: '1984' kitabından 2 kopya -> Sam" in result.stdout
    assert "Kayıttaki kopya: 2 | Raftaki kopya: 1" in result.stdout

    result = runner.invoke(app, ["loans"])
    assert "Sam (555) | Copies: 2" in result.stdout

    result = runner.invoke(app, ["return", str(book.id), "Sam", "555", "-n", "1"])
    assert result.exit_code == 0
    assert "1 kopya kaldı" in result.stdout

    result = runner.invoke(app, ["return", str(book.id), "Sam", "555"])
    assert result.exit_code == 0
    assert "kapandı" in result.stdout
    assert "Raftaki kopya: 3" in result.stdout

def test_borrow_unavailable(cli_lib):
    book = cli_lib.add_book(title="Rare", author="A", year=2000, copies_available=1)
    result = runner.invoke(app, ["borrow", str(book.id), "Sam", "555", "--copies", "2"])
    assert result.exit_code == 1
    assert "Hata: Only 1 copies available" in result.stdout

def test_return_without_loan(cli_lib):
    book = cli_lib.add_book(title="T", author="A", year=2000)
    result = runner.invoke(app, ["return", str(book.id), "Sam", "555"])
    assert result.exit_code == 1
    assert "has no active loan" in result.stdout

def test_history_and_stats(cli_lib):
    book = cli_lib.add_book(title="1984", author="George Orwell", year=1949, copies_available=3)
    cli_lib.borrow(book.id, "Sam", "555", 2)
    cli_lib.return_loan(book.id, "Sam", "555", 1)

    result = runner.invoke(app, ["history"])
    assert result.exit_code == 0
    assert "Sam (555) - total 2 copies, 1 still out" in result.stdout

    result = runner.invoke(app, ["history", "-q", "nobody"])
    assert "No borrow records." in result.stdout

    result = runner.invoke(app, ["stats"])
    assert "Total Books: 1" in result.stdout
    assert "Copies On Loan: 1" in result.stdout

def test_audit(cli_lib):
    book = cli_lib.add_book(title="T", author="A", year=2000, copies_available=2)
    result = runner.invoke(app, ["audit"])
    assert result.exit_code == 0
    assert "All counters reconcile." in result.stdout

    conn = main.database.get_db_connection(cli_lib.db_file)
    try:
        conn.execute("UPDATE books SET copies_available = 7 WHERE id = ?", (book.id,))
        conn.commit()
    finally:
        conn.close()
    result = runner.invoke(app, ["audit"])
    assert result.exit_code == 1
    assert "expected=2" in result.stdout

def test_delete_book(cli_lib):
    book = cli_lib.add_book(title="To Be Removed", author="Remover", year=1999)

    result = runner.invoke(app, ["delete", str(book.id)], input="n\n")
    assert "Silme işlemi iptal edildi." in result.stdout
    assert cli_lib.find_book(book.id) is not None

    result = runner.invoke(app, ["delete", str(book.id), "--yes"])
    assert result.exit_code == 0
    assert "Kitap silindi: [1] To Be Removed" in result.stdout
    assert cli_lib.find_book(book.id) is None

def test_delete_blocked_by_loan(cli_lib):
    book = cli_lib.add_book(title="Borrowed", author="A", year=2000)
    cli_lib.borrow(book.id, "Sam", "555", 1)
    result = runner.invoke(app, ["delete", str(book.id), "-y"])
    assert result.exit_code == 1
    assert "still has 1 copies on loan" in result.stdout

def test_delete_unknown_book():
    result = runner.invoke(app, ["delete", "42", "-y"])
    assert result.exit_code == 1
    assert "Hata: Book 42 not found" in result.stdout

@patch('subprocess.run')
@patch('webbrowser.open')
def test_serve_command(mock_webbrowser_open, mock_subprocess_run):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "adresinde başlatılıyor" in result.stdout
    mock_webbrowser_open.assert_called_once()
    mock_subprocess_run.assert_called_once()
    # uvicorn'un doğru argümanlarla çağrıldığını kontrol et
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "api:app" in args
    assert "--host" in args
    assert "--port" in args
    # Sunucu, CLI ile aynı veritabanını kullanır
    env = mock_subprocess_run.call_args.kwargs["env"]
    assert env["LIBRARY_DB_FILE"] == os.path.abspath(LibraryManager.get_instance().db_file)

@patch('subprocess.run')
@patch('webbrowser.open')
def test_serve_without_browser(mock_webbrowser_open, mock_subprocess_run):
    result = runner.invoke(app, ["serve", "--no-browser", "--port", "9001"])
    assert result.exit_code == 0
    mock_webbrowser_open.assert_not_called()
    assert "9001" in mock_subprocess_run.call_args[0][0]


# --- Etkileşimli menü ---
def test_interactive_borrow_and_return(cli_lib, monkeypatch):
    book = cli_lib.add_book(title="1984", author="George Orwell", year=1949, copies_available=3)

    answers = _answers(monkeypatch, str(book.id), "Sam", "555", 2)
    main.borrow()
    assert next(answers, None) is None
    loan = list(cli_lib.list_active_loans())[0]
    assert (loan.borrower_name, loan.borrower_phone, loan.copies) == ("Sam", "555", 2)
    assert cli_lib.get_book(book.id).copies_available == 1

    answers = _answers(monkeypatch, str(book.id), "1", 1)
    main.return_copies()
    assert next(answers, None) is None
    assert cli_lib.get_book(book.id).copies_available == 2

    _answers(monkeypatch, str(book.id), "1", 1)
    main.return_copies()
    assert cli_lib.get_book(book.id).copies_available == 3
    assert list(cli_lib.list_active_loans()) == []

def test_interactive_add(cli_lib, monkeypatch):
    answers = _answers(monkeypatch, "Dune", "Frank Herbert", "", 1965, 2)
    main.add()
    assert next(answers, None) is None
    book = cli_lib.get_book(1)
    assert (book.title, book.genre, book.year, book.copies_available) == ("Dune", "General", 1965, 2)

def test_interactive_borrow_cancel(cli_lib, monkeypatch):
    cli_lib.add_book(title="1984", author="George Orwell", year=1949)
    _answers(monkeypatch, "0")
    main.borrow()
    assert list(cli_lib.list_active_loans()) == []

def test_interactive_menu_exit(monkeypatch):
    _answers(monkeypatch, "8", "0")
    main.run_menu()


# --- Günlük seviyesi ---
@pytest.fixture
def root_level():
    root = logging.getLogger()
    saved = root.level
    yield root
    root.setLevel(saved)

def test_verbose_flag_lowers_log_level(root_level):
    root_level.setLevel(logging.INFO)
    result = runner.invoke(app, ["-v", "list"])
    assert result.exit_code == 0
    assert root_level.level == logging.DEBUG

def test_default_run_keeps_info_logs_quiet(root_level):
    root_level.setLevel(logging.INFO)
    result = runner.invoke(app, ["add", "-t", "Dune", "-a", "Frank Herbert", "-y", "1965"])
    assert result.exit_code == 0
    assert root_level.level == logging.WARNING
    assert "INFO:library" not in result.output
