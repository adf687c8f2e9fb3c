from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping

from book import Book

DELETED_BOOK_TITLE = "(book deleted)"


class Loan:
    """Bir ödünç alanın bir kitaptan elinde tuttuğu kopyaların kaydı.

    ``returned_at`` boş olduğu sürece kayıt aktiftir. Kopya sayısı iadelerle
    sıfıra indiğinde kayıt kapanır ve artık ona iade uygulanmaz.
    """

    def __init__(self, book_id: int, borrower_name: str, borrower_phone: str, copies: int,
                 borrowed_at: str, returned_at: str | None = None, copies_borrowed: int | None = None,
                 id: int | None = None, book_title: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.borrower_name = borrower_name
        self.borrower_phone = borrower_phone
        self.copies = copies
        # Bu kayda şimdiye kadar eklenen toplam kopya (iadelerle azalmaz)
        self.copies_borrowed = copies if copies_borrowed is None else copies_borrowed
        self.borrowed_at = borrowed_at
        self.returned_at = returned_at
        # Sorgu kitaplar tablosuyla birleştirildiğinde doldurulur; kitap silinmişse None
        self.book_title = book_title

    @property
    def is_active(self) -> bool:
        return self.returned_at is None

    @property
    def display_title(self) -> str:
        return self.book_title or DELETED_BOOK_TITLE

    def __repr__(self) -> str:  # pragma: no cover
        state = "active" if self.is_active else "closed"
        return f"<Loan id={self.id} book={self.book_id} {self.borrower_name!r} copies={self.copies} {state}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "book_title": self.book_title,
            "borrower_name": self.borrower_name,
            "borrower_phone": self.borrower_phone,
            "copies": self.copies,
            "copies_borrowed": self.copies_borrowed,
            "borrowed_at": self.borrowed_at,
            "returned_at": self.returned_at,
            "active": self.is_active,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Loan":
        data = dict(data)
        return Loan(
            id=data.get("id"),
            book_id=data["book_id"],
            borrower_name=data["borrower_name"],
            borrower_phone=data["borrower_phone"],
            copies=data["copies"],
            copies_borrowed=data.get("copies_borrowed"),
            borrowed_at=data["borrowed_at"],
            returned_at=data.get("returned_at"),
            book_title=data.get("book_title"),
        )


@dataclass
class BorrowResult:
    book: Book
    loan: Loan


@dataclass
class ReturnResult:
    book: Book
    # İadeden etkilenen kayıtlar, en yeniden eskiye
    loans: List[Loan]
    returned: int


@dataclass
class BorrowerHistory:
    """Bir ödünç alanın (ad + telefon) tüm kayıtları ve özet sayıları."""
    borrower_name: str
    borrower_phone: str
    loans: List[Loan] = field(default_factory=list)

    @property
    def total_copies(self) -> int:
        return sum(loan.copies_borrowed for loan in self.loans)

    @property
    def active_copies(self) -> int:
        return sum(loan.copies for loan in self.loans if loan.is_active)

    def to_dict(self) -> dict:
        return {
            "borrower_name": self.borrower_name,
            "borrower_phone": self.borrower_phone,
            "total_copies": self.total_copies,
            "active_copies": self.active_copies,
            "loans": [loan.to_dict() for loan in self.loans],
        }


@dataclass
class BorrowerSummary:
    borrower_name: str
    borrower_phone: str
    active_copies: int
    active_loans: int


@dataclass
class BookLoanSummary:
    book: Book
    active_copies: int
    active_loans: int


@dataclass
class Discrepancy:
    """A book whose shelf counter does not reconcile with its active loans."""
    book_id: int
    title: str
    copies_available: int
    active_copies: int
    total_copies: int

    @property
    def expected_available(self) -> int:
        return self.total_copies - self.active_copies

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "copies_available": self.copies_available,
            "active_copies": self.active_copies,
            "total_copies": self.total_copies,
            "expected_available": self.expected_available,
        }
