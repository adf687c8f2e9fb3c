from __future__ import annotations

from typing import Any, Mapping


class Book:
    """Katalogdaki tek bir kitabı ve raftaki kopya sayacını temsil eder."""

    def __init__(self, title: str, author: str, year: int, genre: str = "General",
                 copies_available: int = 1, total_copies: int | None = None,
                 cover_ref: str | None = None, id: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.genre = genre
        self.year = year
        self.copies_available = copies_available
        # Sahip olunan toplam kopya; belirtilmezse şu an raftakilerle aynıdır
        self.total_copies = copies_available if total_copies is None else total_copies
        self.cover_ref = cover_ref
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def copies_on_loan(self) -> int:
        return self.total_copies - self.copies_available

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} ({self.year}) by {self.author}"

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Book id={self.id} title={self.title!r} available={self.copies_available}/{self.total_copies}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "genre": self.genre,
            "year": self.year,
            "copies_available": self.copies_available,
            "total_copies": self.total_copies,
            "cover_ref": self.cover_ref,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Book":
        # sqlite3.Row da Mapping gibi davranır ama .get() sunmaz
        data = dict(data)
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            genre=data.get("genre") or "General",
            year=data["year"],
            copies_available=data.get("copies_available", 1),
            total_copies=data.get("total_copies"),
            cover_ref=data.get("cover_ref"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
