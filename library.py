import logging
import sqlite3
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar

import database
from book import Book
from config import settings
from database import get_db_connection, initialize_database, transaction, utcnow
from errors import (
    ActiveLoansError,
    ConcurrentConflictError,
    NoActiveLoanError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from loan import (
    BookLoanSummary,
    BorrowerHistory,
    BorrowerSummary,
    BorrowResult,
    Discrepancy,
    Loan,
    ReturnResult,
)
from utils.validators import FieldValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")

BOOK_COLUMNS = (
    "id, title, author, genre, year, copies_available, total_copies, "
    "cover_ref, created_at, updated_at"
)
LOAN_COLUMNS = (
    "l.id, l.book_id, l.borrower_name, l.borrower_phone, l.copies, "
    "l.copies_borrowed, l.borrowed_at, l.returned_at, b.title AS book_title"
)
UPDATABLE_FIELDS = ("title", "author", "genre", "year", "copies_available", "total_copies", "cover_ref")


def retry_on_conflict(operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a ledger operation, retrying it once on ConcurrentConflictError.

    The retry re-reads availability, so a pool that really ran dry surfaces as
    UnavailableError; a second conflict propagates to the caller.
    """
    try:
        return operation(*args, **kwargs)
    except ConcurrentConflictError as exc:
        logger.warning(f"Concurrent conflict, retrying once: {exc.message}")
        return operation(*args, **kwargs)


class BookQuery:
    """Lazy, finite, restartable view over the catalog.

    Nothing touches the database until iteration starts and every new
    iteration re-runs the query, so the same object can be walked twice.
    """

    def __init__(self, db_file: str, query: Optional[str] = None, genre: Optional[str] = None,
                 offset: int = 0, limit: Optional[int] = None) -> None:
        self.db_file = db_file
        self.query = FieldValidator.optional_text(query)
        self.genre = FieldValidator.optional_text(genre)
        self.offset = max(0, offset)
        self.limit = limit

    def _where(self) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if self.query:
            needle = self.query.casefold()
            clauses.append(
                "(instr(casefold(title), ?) > 0 OR instr(casefold(author), ?) > 0 "
                "OR instr(casefold(genre), ?) > 0)"
            )
            params.extend([needle, needle, needle])
        if self.genre:
            clauses.append("casefold(genre) = ?")
            params.append(self.genre.casefold())
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def __iter__(self) -> Iterator[Book]:
        where, params = self._where()
        sql = f"SELECT {BOOK_COLUMNS} FROM books{where} ORDER BY created_at DESC, id DESC"
        if self.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params += [self.limit, self.offset]
        elif self.offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(self.offset)
        conn = get_db_connection(self.db_file)
        try:
            for row in conn.execute(sql, params):
                yield Book.from_dict(row)
        finally:
            conn.close()

    def count(self) -> int:
        """Number of matching books, ignoring offset/limit."""
        where, params = self._where()
        conn = get_db_connection(self.db_file)
        try:
            return conn.execute(f"SELECT COUNT(*) FROM books{where}", params).fetchone()[0]
        finally:
            conn.close()


class LoanQuery:
    """Lazy, restartable view over active loans, newest first."""

    def __init__(self, db_file: str, book_id: Optional[int] = None) -> None:
        self.db_file = db_file
        self.book_id = book_id

    def __iter__(self) -> Iterator[Loan]:
        sql = (
            f"SELECT {LOAN_COLUMNS} FROM loans l LEFT JOIN books b ON b.id = l.book_id "
            "WHERE l.returned_at IS NULL"
        )
        params: List[Any] = []
        if self.book_id is not None:
            sql += " AND l.book_id = ?"
            params.append(self.book_id)
        sql += " ORDER BY l.borrowed_at DESC, l.id DESC"
        conn = get_db_connection(self.db_file)
        try:
            for row in conn.execute(sql, params):
                yield Loan.from_dict(row)
        finally:
            conn.close()


class Library:
    """Manages the book catalog and the loan ledger on top of SQLite."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        initialize_database(self.db_file)  # Ensure DB and tables exist

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: Optional[str] = None, author: Optional[str] = None, year: Any = None,
                 genre: Optional[str] = None, copies_available: Any = None,
                 cover_ref: Optional[str] = None) -> Book:
        """Create a book. Copies default to 1 and the genre to "General"."""
        title = FieldValidator.require_text(title, "title")
        author = FieldValidator.require_text(author, "author")
        year = FieldValidator.non_negative_int(year, "year")
        if copies_available is None:
            copies = 1
        else:
            copies = FieldValidator.non_negative_int(copies_available, "copies_available")
        genre = FieldValidator.optional_text(genre) or settings.default_genre
        cover_ref = FieldValidator.optional_text(cover_ref)

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO books (title, author, genre, year, copies_available, total_copies, cover_ref, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (title, author, genre, year, copies, copies, cover_ref, utcnow()),
            )
            conn.commit()
            book_id = cursor.lastrowid
        finally:
            conn.close()
        logger.info(f"Book added: id={book_id} title={title!r} copies={copies}")
        return self.get_book(book_id)

    def get_book(self, book_id: int) -> Book:
        conn = get_db_connection(self.db_file)
        try:
            row = self._fetch_book_row(conn, book_id)
        finally:
            conn.close()
        return Book.from_dict(row)

    def find_book(self, book_id: int) -> Optional[Book]:
        try:
            return self.get_book(book_id)
        except NotFoundError:
            return None

    def list_books(self, query: Optional[str] = None, genre: Optional[str] = None,
                   offset: int = 0, limit: Optional[int] = None) -> BookQuery:
        """Books matching a case-insensitive substring of title, author or genre, newest first."""
        return BookQuery(self.db_file, query=query, genre=genre, offset=offset, limit=limit)

    def count_books(self, query: Optional[str] = None, genre: Optional[str] = None) -> int:
        return BookQuery(self.db_file, query=query, genre=genre).count()

    def update_book(self, book_id: int, **fields: Any) -> Book:
        """Apply the given fields to a book.

        Counters are reconciled against active loans: setting
        ``copies_available`` moves ``total_copies`` with it, setting
        ``total_copies`` recomputes what is on the shelf, and a total below the
        copies currently on loan is rejected.
        """
        unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown field(s): {', '.join(unknown)}", fields=unknown)
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            raise ValidationError("Nothing to update. Provide at least one field.")

        updates: Dict[str, Any] = {}
        if "title" in fields:
            updates["title"] = FieldValidator.require_text(fields["title"], "title")
        if "author" in fields:
            updates["author"] = FieldValidator.require_text(fields["author"], "author")
        if "genre" in fields:
            updates["genre"] = FieldValidator.optional_text(fields["genre"]) or settings.default_genre
        if "year" in fields:
            updates["year"] = FieldValidator.non_negative_int(fields["year"], "year")
        if "cover_ref" in fields:
            updates["cover_ref"] = FieldValidator.optional_text(fields["cover_ref"])
        available = total = None
        if "copies_available" in fields:
            available = FieldValidator.non_negative_int(fields["copies_available"], "copies_available")
        if "total_copies" in fields:
            total = FieldValidator.non_negative_int(fields["total_copies"], "total_copies")

        with transaction(self.db_file) as conn:
            self._fetch_book_row(conn, book_id)
            if available is not None or total is not None:
                on_loan = self._active_copies(conn, book_id)
                if available is not None and total is not None:
                    if available + on_loan != total:
                        raise ValidationError(
                            "copies_available and total_copies disagree with the copies on loan",
                            field="total_copies", copies_available=available,
                            total_copies=total, on_loan=on_loan,
                        )
                elif available is not None:
                    total = available + on_loan
                else:
                    if total < on_loan:
                        raise ValidationError(
                            f"total_copies cannot be below the {on_loan} copies currently on loan",
                            field="total_copies", total_copies=total, on_loan=on_loan,
                        )
                    available = total - on_loan
                updates["copies_available"] = available
                updates["total_copies"] = total

            updates["updated_at"] = utcnow()
            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(f"UPDATE books SET {assignments} WHERE id = ?", (*updates.values(), book_id))
            row = self._fetch_book_row(conn, book_id)
        logger.info(f"Book updated: id={book_id} fields={sorted(fields)}")
        return Book.from_dict(row)

    def delete_book(self, book_id: int) -> Book:
        """Remove a book. Refused while any of its copies are still on loan.

        Closed loans are kept; readers show them as "(book deleted)".
        """
        with transaction(self.db_file) as conn:
            row = self._fetch_book_row(conn, book_id)
            on_loan = self._active_copies(conn, book_id)
            if on_loan:
                raise ActiveLoansError(
                    f"Book {book_id} still has {on_loan} copies on loan",
                    book_id=book_id, on_loan=on_loan,
                )
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Book deleted: id={book_id} title={row['title']!r}")
        return Book.from_dict(row)

    # ------------------------- Loan ledger ------------------------- #
    def borrow(self, book_id: int, borrower_name: Optional[str], borrower_phone: Optional[str],
               copies: Any) -> BorrowResult:
        """Lend ``copies`` copies of a book to a borrower.

        An active loan for the same (book, name, phone) is extended instead of
        duplicated. The shelf decrement and the loan write commit together.
        """
        copies = FieldValidator.positive_int(copies, "copies")
        name = FieldValidator.require_text(borrower_name, "borrower_name")
        phone = FieldValidator.require_text(borrower_phone, "borrower_phone")

        row = self._read_book_row(book_id)
        if copies > row["copies_available"]:
            logger.warning(f"Borrow rejected: book={book_id} requested={copies} available={row['copies_available']}")
            raise UnavailableError(
                f"Only {row['copies_available']} copies available",
                book_id=book_id, requested=copies, available=row["copies_available"],
            )

        now = utcnow()
        with transaction(self.db_file) as conn:
            # Compare-and-decrement: the check and the write are one statement
            cursor = conn.execute(
                "UPDATE books SET copies_available = copies_available - ?, updated_at = ? "
                "WHERE id = ? AND copies_available >= ?",
                (copies, now, book_id, copies),
            )
            if cursor.rowcount == 0:
                current = self._fetch_book_row(conn, book_id)
                raise ConcurrentConflictError(
                    f"Only {current['copies_available']} copies left after a concurrent update",
                    book_id=book_id, requested=copies, available=current["copies_available"],
                )

            existing = conn.execute(
                "SELECT id FROM loans WHERE book_id = ? AND borrower_name = ? AND borrower_phone = ? "
                "AND returned_at IS NULL ORDER BY borrowed_at DESC, id DESC LIMIT 1",
                (book_id, name, phone),
            ).fetchone()
            if existing:
                loan_id = existing["id"]
                conn.execute(
                    "UPDATE loans SET copies = copies + ?, copies_borrowed = copies_borrowed + ?, "
                    "borrowed_at = ? WHERE id = ?",
                    (copies, copies, now, loan_id),
                )
            else:
                loan_id = conn.execute(
                    "INSERT INTO loans (book_id, borrower_name, borrower_phone, copies, copies_borrowed, borrowed_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (book_id, name, phone, copies, copies, now),
                ).lastrowid

            book = Book.from_dict(self._fetch_book_row(conn, book_id))
            loan = self._fetch_loan(conn, loan_id)
        logger.info(
            f"Borrowed: book={book_id} borrower={name!r} copies={copies} "
            f"loan={loan_id} extended={bool(existing)} available={book.copies_available}"
        )
        return BorrowResult(book=book, loan=loan)

    def return_loan(self, book_id: int, borrower_name: Optional[str], borrower_phone: Optional[str],
                    count: Any) -> ReturnResult:
        """Return ``count`` copies for a borrower, reducing the newest loan first.

        Loans that reach zero copies are closed. The shelf counter grows by the
        requested count.
        """
        count = FieldValidator.integer(count, "count")
        name = FieldValidator.require_text(borrower_name, "borrower_name")
        phone = FieldValidator.require_text(borrower_phone, "borrower_phone")

        now = utcnow()
        with transaction(self.db_file) as conn:
            self._fetch_book_row(conn, book_id)
            rows = conn.execute(
                "SELECT id, copies FROM loans WHERE book_id = ? AND borrower_name = ? AND borrower_phone = ? "
                "AND returned_at IS NULL ORDER BY borrowed_at DESC, id DESC",
                (book_id, name, phone),
            ).fetchall()
            if not rows:
                raise NoActiveLoanError(
                    f"{name} ({phone}) has no active loan for book {book_id}",
                    book_id=book_id, borrower_name=name, borrower_phone=phone,
                )
            total_active = sum(row["copies"] for row in rows)
            if count < 1 or count > total_active:
                logger.warning(f"Return rejected: book={book_id} borrower={name!r} requested={count} active={total_active}")
                raise ValidationError(
                    f"Can return between 1 and {total_active} copies",
                    field="count", requested=count, active=total_active,
                )

            remaining = count
            touched: List[int] = []
            for row in rows:
                if remaining == 0:
                    break
                reduce = min(row["copies"], remaining)
                left = row["copies"] - reduce
                remaining -= reduce
                if left == 0:
                    conn.execute("UPDATE loans SET copies = 0, returned_at = ? WHERE id = ?", (now, row["id"]))
                else:
                    conn.execute("UPDATE loans SET copies = ? WHERE id = ?", (left, row["id"]))
                touched.append(row["id"])

            conn.execute(
                "UPDATE books SET copies_available = copies_available + ?, updated_at = ? WHERE id = ?",
                (count, now, book_id),
            )
            book = Book.from_dict(self._fetch_book_row(conn, book_id))
            loans = [self._fetch_loan(conn, loan_id) for loan_id in touched]
        logger.info(
            f"Returned: book={book_id} borrower={name!r} copies={count} "
            f"loans={touched} available={book.copies_available}"
        )
        return ReturnResult(book=book, loans=loans, returned=count)

    def list_active_loans(self, book_id: Optional[int] = None) -> LoanQuery:
        return LoanQuery(self.db_file, book_id=book_id)

    def loan_history(self, book_id: Optional[int] = None, query: Optional[str] = None) -> List[BorrowerHistory]:
        """All loans, active and closed, grouped by borrower (name + phone).

        Groups and the loans inside them are ordered newest first. ``query``
        matches a case-insensitive substring of the name or the phone.
        """
        sql = f"SELECT {LOAN_COLUMNS} FROM loans l LEFT JOIN books b ON b.id = l.book_id"
        params: List[Any] = []
        if book_id is not None:
            sql += " WHERE l.book_id = ?"
            params.append(book_id)
        sql += " ORDER BY l.borrowed_at DESC, l.id DESC"

        conn = get_db_connection(self.db_file)
        try:
            loans = [Loan.from_dict(row) for row in conn.execute(sql, params)]
        finally:
            conn.close()

        groups: Dict[Tuple[str, str], BorrowerHistory] = {}
        for loan in loans:
            key = (loan.borrower_name, loan.borrower_phone)
            if key not in groups:
                groups[key] = BorrowerHistory(loan.borrower_name, loan.borrower_phone)
            groups[key].loans.append(loan)

        needle = (FieldValidator.optional_text(query) or "").casefold()
        return [
            group for group in groups.values()
            if not needle
            or needle in group.borrower_name.casefold()
            or needle in group.borrower_phone.casefold()
        ]

    def active_borrowers(self, book_id: int) -> List[BorrowerSummary]:
        """Borrowers currently holding copies of a book, most recent borrower first."""
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT borrower_name, borrower_phone, SUM(copies) AS active_copies, "
                "COUNT(*) AS active_loans, MAX(borrowed_at) AS last_borrowed "
                "FROM loans WHERE book_id = ? AND returned_at IS NULL "
                "GROUP BY borrower_name, borrower_phone ORDER BY last_borrowed DESC",
                (book_id,),
            ).fetchall()
        finally:
            conn.close()
        return [
            BorrowerSummary(row["borrower_name"], row["borrower_phone"], row["active_copies"], row["active_loans"])
            for row in rows
        ]

    def books_with_active_loans(self) -> List[BookLoanSummary]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT b.*, "
                "SUM(l.copies) AS active_copies, COUNT(l.id) AS active_loans "
                "FROM books b JOIN loans l ON l.book_id = b.id AND l.returned_at IS NULL "
                "GROUP BY b.id ORDER BY b.title"
            ).fetchall()
        finally:
            conn.close()
        return [BookLoanSummary(Book.from_dict(row), row["active_copies"], row["active_loans"]) for row in rows]

    # ------------------------- Reconciliation ------------------------- #
    def check_invariants(self, book_id: Optional[int] = None) -> List[Discrepancy]:
        """Books whose shelf counter disagrees with total owned minus active loans."""
        sql = (
            "SELECT b.id, b.title, b.copies_available, b.total_copies, "
            "COALESCE(SUM(l.copies), 0) AS active_copies "
            "FROM books b LEFT JOIN loans l ON l.book_id = b.id AND l.returned_at IS NULL"
        )
        params: List[Any] = []
        if book_id is not None:
            sql += " WHERE b.id = ?"
            params.append(book_id)
        sql += " GROUP BY b.id ORDER BY b.id"

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        problems = []
        for row in rows:
            if row["copies_available"] < 0 or row["copies_available"] + row["active_copies"] != row["total_copies"]:
                problems.append(Discrepancy(
                    book_id=row["id"],
                    title=row["title"],
                    copies_available=row["copies_available"],
                    active_copies=row["active_copies"],
                    total_copies=row["total_copies"],
                ))
        if problems:
            logger.warning(f"Invariant check found {len(problems)} inconsistent book(s)")
        return problems

    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        conn = get_db_connection(self.db_file)
        try:
            books = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(copies_available), 0) FROM books"
            ).fetchone()
            loans = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(copies), 0) FROM loans WHERE returned_at IS NULL"
            ).fetchone()
            borrowers = conn.execute(
                "SELECT COUNT(*) FROM (SELECT DISTINCT borrower_name, borrower_phone FROM loans)"
            ).fetchone()[0]
        finally:
            conn.close()
        return {
            "total_books": books[0],
            "total_copies": books[1],
            "copies_available": books[2],
            "copies_on_loan": loans[1],
            "active_loans": loans[0],
            "borrowers": borrowers,
        }

    # ------------------------- Persistence helpers ------------------------- #
    def _read_book_row(self, book_id: int) -> sqlite3.Row:
        """Plain (non-locking) read used for the borrow availability check."""
        conn = get_db_connection(self.db_file)
        try:
            return self._fetch_book_row(conn, book_id)
        finally:
            conn.close()

    @staticmethod
    def _fetch_book_row(conn: sqlite3.Connection, book_id: int) -> sqlite3.Row:
        row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Book {book_id} not found", resource="book", id=book_id)
        return row

    @staticmethod
    def _fetch_loan(conn: sqlite3.Connection, loan_id: int) -> Loan:
        row = conn.execute(
            f"SELECT {LOAN_COLUMNS} FROM loans l LEFT JOIN books b ON b.id = l.book_id WHERE l.id = ?",
            (loan_id,),
        ).fetchone()
        return Loan.from_dict(row)

    @staticmethod
    def _active_copies(conn: sqlite3.Connection, book_id: int) -> int:
        return conn.execute(
            "SELECT COALESCE(SUM(copies), 0) FROM loans WHERE book_id = ? AND returned_at IS NULL",
            (book_id,),
        ).fetchone()[0]

    def close(self) -> None:
        """Compatibility helper: connections are opened per operation, so there is nothing to close."""
        return None
