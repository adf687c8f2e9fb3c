import os
import pytest

from library import Library


@pytest.fixture
def lib(tmp_path, request):
    # Her test için benzersiz bir veritabanı dosyası oluştur
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    # Kütüphanenin bu veritabanı dosyasını kullandığından emin ol
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def stocked(lib):
    """Üç kitaplık küçük bir katalog (en eskiden en yeniye eklenmiş)."""
    orwell = lib.add_book(title="1984", author="George Orwell", year=1949, genre="Dystopian", copies_available=3)
    clean = lib.add_book(title="Clean Code", author="Robert C. Martin", year=2008, genre="Programming",
                         copies_available=2)
    alchemist = lib.add_book(title="The Alchemist", author="Paulo Coelho", year=1988, genre="Fiction",
                             copies_available=1)
    return lib, orwell, clean, alchemist
