import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def default_db_file() -> str:
    # Öncelik: LIBRARY_DB_FILE, ardından eski LIBRARY_DATA_FILE, en son çalışma dizinindeki library.db
    return os.getenv("LIBRARY_DB_FILE") or os.getenv("LIBRARY_DATA_FILE") or "library.db"


@dataclass
class Settings:
    # API Ayarları
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Veritabanı Ayarları
    db_file: str = default_db_file()
    seed_file: str = os.getenv("LIBRARY_SEED_FILE", "library.json")

    # Katalog Ayarları
    default_genre: str = os.getenv("DEFAULT_GENRE", "General")

    # Uygulama Ayarları
    app_name: str = os.getenv("APP_NAME", "Kütüphane Ödünç Defteri")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Sayfalama Ayarları
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
