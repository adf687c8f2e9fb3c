import json
import logging
import os
import sqlite3
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from config import settings
from errors import ValidationError
from utils.validators import FieldValidator

logger = logging.getLogger(__name__)

# Varsayılan veritabanı dosyası (bkz. config.Settings.db_file)
DATABASE_FILE = settings.db_file
JSON_FILE = settings.seed_file


def _casefold(value: Optional[str]) -> Optional[str]:
    """SQLite'ın lower() fonksiyonu yalnızca ASCII'yi bilir; Türkçe karakterler için Python'a bırak."""
    if value is None:
        return None
    return str(value).casefold()


def utcnow() -> str:
    """Sabit genişlikli ISO-8601 UTC zaman damgası; metin olarak sıralandığında da doğru sıralanır."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _is_test_env() -> bool:
    return bool(os.environ.get("PYTEST_CURRENT_TEST")) or "pytest" in sys.modules


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """SQLite veritabanına bir bağlantı kurar."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.create_function("casefold", 1, _casefold, deterministic=True)
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Yazma kilidini baştan alan (BEGIN IMMEDIATE) tek bir işlem açar.

    Blok içinde bir istisna oluşursa tüm değişiklikler geri alınır; bu yüzden
    bir işlemin kitap ve ödünç kaydı yazmaları ya birlikte görünür ya hiç görünmez.
    """
    conn = get_db_connection(db_file)
    # Otomatik işlem yönetimini kapat; BEGIN/COMMIT/ROLLBACK'i biz yönetiyoruz
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Veritabanında mevcut değilse gerekli tabloları oluşturur."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        # Eşzamanlı okuyucular yazarı beklemesin diye WAL modunu etkinleştir
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                genre TEXT NOT NULL DEFAULT 'General',
                year INTEGER NOT NULL CHECK(year >= 0),
                copies_available INTEGER NOT NULL DEFAULT 1 CHECK(copies_available >= 0),
                total_copies INTEGER,
                cover_ref TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
        """)

        # Ödünç defteri. book_id bilinçli olarak yabancı anahtar değildir:
        # kitap silindiğinde kapanmış kayıtlar "kitap silindi" olarak okunur.
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                borrower_name TEXT NOT NULL,
                borrower_phone TEXT NOT NULL,
                copies INTEGER NOT NULL CHECK(copies >= 0),
                copies_borrowed INTEGER,
                borrowed_at TEXT NOT NULL,
                returned_at TEXT
            )
        """)

        # Sütunların var olup olmadığını kontrol edin, yoksa ekleyin (geçiş için)
        cursor.execute("PRAGMA table_info(books)")
        book_columns = [column[1] for column in cursor.fetchall()]
        if "total_copies" not in book_columns:
            cursor.execute("ALTER TABLE books ADD COLUMN total_copies INTEGER")

        cursor.execute("PRAGMA table_info(loans)")
        loan_columns = [column[1] for column in cursor.fetchall()]
        if "copies_borrowed" not in loan_columns:
            cursor.execute("ALTER TABLE loans ADD COLUMN copies_borrowed INTEGER")
            cursor.execute("UPDATE loans SET copies_borrowed = copies WHERE copies_borrowed IS NULL")

        # Eski satırlar için toplam kopya sayısını raftaki + ödünçteki olarak geri doldur
        cursor.execute("""
            UPDATE books SET total_copies = copies_available + COALESCE((
                SELECT SUM(l.copies) FROM loans l
                WHERE l.book_id = books.id AND l.returned_at IS NULL
            ), 0)
            WHERE total_copies IS NULL
        """)

        # "Bu ödünç alanın aktif kaydı var mı?" araması için dizin
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_loans_active_lookup
            ON loans(book_id, borrower_name, borrower_phone, returned_at)
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_borrowed_at ON loans(borrowed_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")

        conn.commit()
    finally:
        conn.close()


def seed_from_json(db_file: Optional[str] = None, json_file: Optional[str] = None) -> int:
    """Örnek kitapları JSON dosyasından boş bir veritabanına yükler.

    Bu tek seferlik bir işlemdir: veritabanında zaten kitap varsa veya dosya
    yoksa hiçbir şey yapmaz. Eklenen kitap sayısını döndürür.
    """
    json_file = json_file or JSON_FILE
    conn = get_db_connection(db_file)
    try:
        book_count = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        if book_count > 0:
            return 0
        if not os.path.exists(json_file):
            return 0

        logger.info(f"Seeding books from {json_file}")
        try:
            with open(json_file, "r", encoding="utf-8") as f:
                data: List[Dict[str, Any]] = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Could not read seed file {json_file}: {e}")
            return 0

        rows = []
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                logger.warning(f"Skipping seed entry #{index}: not an object")
                continue
            # Temel doğrulama: katalogla aynı kurallar, geçersiz kayıt atlanır
            try:
                title = FieldValidator.require_text(item.get("title"), "title")
                author = FieldValidator.require_text(item.get("author"), "author")
                year = FieldValidator.non_negative_int(item.get("year"), "year")
                copies = FieldValidator.non_negative_int(
                    item.get("copies_available", item.get("copiesAvailable", 1)), "copies_available"
                )
            except ValidationError as e:
                logger.warning(f"Skipping seed entry #{index}: {e}")
                continue
            rows.append((
                title,
                author,
                FieldValidator.optional_text(item.get("genre")) or settings.default_genre,
                year,
                copies,
                copies,
                utcnow(),
            ))

        if rows:
            conn.executemany(
                "INSERT INTO books (title, author, genre, year, copies_available, total_copies, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            conn.commit()
        logger.info(f"Seeded {len(rows)} books")
        return len(rows)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Veritabanını başlatır, gerekirse tabloları oluşturur ve örnek verileri yükler."""
    create_tables(db_file)
    # Testler sırasında veritabanının boş başlaması için örnek verileri yükleme
    if not _is_test_env():
        seed_from_json(db_file)
