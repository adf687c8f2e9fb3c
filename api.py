import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt

from config import settings
from database import get_db_connection
from errors import (
    ActiveLoansError,
    ConcurrentConflictError,
    LibraryError,
    NoActiveLoanError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from library import Library, retry_on_conflict

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Kütüphane örneği ---
# İlk istekte oluşturulur; testler get_library bağımlılığını geçersiz kılar
_library: Optional[Library] = None

def get_library() -> Library:
    global _library
    if _library is None:
        _library = Library()
    return _library

# --- Hata eşleme ---
# Her kütüphane hatası tek bir yerde HTTP durum koduna çevrilir
ERROR_STATUS = {
    ValidationError: 400,
    UnavailableError: 400,
    NoActiveLoanError: 400,
    NotFoundError: 404,
    ConcurrentConflictError: 409,
    ActiveLoansError: 409,
}

def _status_for(exc: LibraryError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500

@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status = _status_for(exc)
    logger.info(f"{request.method} {request.url.path} -> {status} {exc.code}: {exc.message}")
    return JSONResponse(status_code=status, content={"success": False, **exc.to_dict()})

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Gövde/parametre biçim hataları da aynı başarısız yük şeklinde döner
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "request_validation_error",
            "message": "İstek doğrulanamadı",
            "details": {"errors": jsonable_errors(exc)},
        },
    )

def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]

# --- Modeller ---
class BookModel(BaseModel):
    id: int
    title: str
    author: str
    genre: str
    year: int
    copies_available: int
    total_copies: int
    cover_ref: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

class BookCreateModel(BaseModel):
    # Alan kuralları çekirdekte denetlenir; eksik alanlar 400 ValidationError olarak döner
    title: Optional[str] = None
    author: Optional[str] = None
    year: Optional[StrictInt] = None
    genre: Optional[str] = None
    copies_available: Optional[StrictInt] = Field(default=None, description="Varsayılan: 1")
    cover_ref: Optional[str] = Field(default=None, description="Kapak görseli yolu veya URL'si")

class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    year: Optional[StrictInt] = None
    genre: Optional[str] = None
    copies_available: Optional[StrictInt] = None
    total_copies: Optional[StrictInt] = None
    cover_ref: Optional[str] = None

class LoanModel(BaseModel):
    id: int
    book_id: int
    book_title: Optional[str] = None
    borrower_name: str
    borrower_phone: str
    copies: int
    copies_borrowed: int
    borrowed_at: str
    returned_at: Optional[str] = None
    active: bool

class BorrowRequest(BaseModel):
    borrower_name: Optional[str] = None
    borrower_phone: Optional[str] = None
    copies: Optional[StrictInt] = None

class ReturnRequest(BaseModel):
    borrower_name: Optional[str] = None
    borrower_phone: Optional[str] = None
    count: Optional[StrictInt] = None

class BorrowerHistoryModel(BaseModel):
    borrower_name: str
    borrower_phone: str
    total_copies: int
    active_copies: int
    loans: List[LoanModel]

class StatsModel(BaseModel):
    total_books: int
    total_copies: int
    copies_available: int
    copies_on_loan: int
    active_loans: int
    borrowers: int

class BookEnvelope(BaseModel):
    success: bool = True
    data: BookModel

class BookListEnvelope(BaseModel):
    success: bool = True
    count: int
    total: int
    page: int
    pages: int
    data: List[BookModel]

class BorrowData(BaseModel):
    book: BookModel
    loan: LoanModel

class BorrowEnvelope(BaseModel):
    success: bool = True
    message: str
    data: BorrowData

class ReturnData(BaseModel):
    book: BookModel
    loans: List[LoanModel]
    returned: int

class ReturnEnvelope(BaseModel):
    success: bool = True
    message: str
    data: ReturnData

class LoanListEnvelope(BaseModel):
    success: bool = True
    count: int
    data: List[LoanModel]

class HistoryEnvelope(BaseModel):
    success: bool = True
    count: int
    data: List[BorrowerHistoryModel]

class StatsEnvelope(BaseModel):
    success: bool = True
    data: StatsModel

# --- Yardımcı Fonksiyonlar ---
def _add_link_headers(request: Request, response: Response, page: int, limit: int, pages: int) -> None:
    """Sayfalandırma için Link başlıkları ekle."""
    links = []
    if page > 1:
        links.append(f'<{request.url.include_query_params(page=page - 1, limit=limit)}>; rel="prev"')
    if page < pages:
        links.append(f'<{request.url.include_query_params(page=page + 1, limit=limit)}>; rel="next"')
    if pages:
        links.append(f'<{request.url.include_query_params(page=1, limit=limit)}>; rel="first"')
        links.append(f'<{request.url.include_query_params(page=pages, limit=limit)}>; rel="last"')
    if links:
        response.headers["Link"] = ", ".join(links)

# --- Sağlık Kontrolü ---
@app.get("/health")
def health(library: Library = Depends(get_library)):
    """Hızlı bir veritabanı bağlantı denemesi yapar ve kitap sayısını döndürür."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except sqlite3.Error as e:
        logger.error(f"Health check database probe failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "total_books": library.count_books() if db_ok else None,
    }

# --- Katalog ---
@app.get("/books", response_model=BookListEnvelope)
def get_books(
    request: Request,
    response: Response,
    q: Optional[str] = Query(None, description="Başlık, yazar veya türde arama"),
    genre: Optional[str] = Query(None, description="Türe göre tam eşleşme"),
    page: int = Query(1, ge=1, description="Sayfa numarası"),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size, description="Sayfa başına öğe"),
    library: Library = Depends(get_library),
):
    """Arama, tür filtresi ve sayfalama ile kitapları listele (en yeni önce)."""
    total = library.count_books(query=q, genre=genre)
    pages = (total + limit - 1) // limit
    books = list(library.list_books(query=q, genre=genre, offset=(page - 1) * limit, limit=limit))
    _add_link_headers(request, response, page, limit, pages)
    return {
        "success": True,
        "count": len(books),
        "total": total,
        "page": page,
        "pages": pages,
        "data": [b.to_dict() for b in books],
    }

@app.post("/books", response_model=BookEnvelope, status_code=201)
def add_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    """Kataloğa yeni bir kitap ekle."""
    book = library.add_book(**payload.model_dump())
    return {"success": True, "data": book.to_dict()}

@app.get("/books/{book_id}", response_model=BookEnvelope)
def get_book(book_id: int, library: Library = Depends(get_library)):
    return {"success": True, "data": library.get_book(book_id).to_dict()}

@app.put("/books/{book_id}", response_model=BookEnvelope)
def update_book(book_id: int, update: BookUpdateModel, library: Library = Depends(get_library)):
    """Verilen alanları güncelle; kopya sayaçları aktif ödünçlere göre uzlaştırılır."""
    book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
    return {"success": True, "data": book.to_dict()}

@app.delete("/books/{book_id}")
def delete_book(book_id: int, library: Library = Depends(get_library)):
    """Kitabı sil. Ödünçte kopyası varsa 409 döner."""
    library.delete_book(book_id)
    return {"success": True, "data": {}}

# --- Ödünç defteri ---
@app.post("/books/{book_id}/borrow", response_model=BorrowEnvelope, status_code=201)
def borrow_book(book_id: int, payload: BorrowRequest, library: Library = Depends(get_library)):
    """Kopya ödünç ver. Eşzamanlılık çakışması bir kez otomatik olarak yeniden denenir."""
    result = retry_on_conflict(
        library.borrow, book_id, payload.borrower_name, payload.borrower_phone, payload.copies
    )
    return {
        "success": True,
        "message": "Book borrowed successfully",
        "data": {"book": result.book.to_dict(), "loan": result.loan.to_dict()},
    }

@app.post("/books/{book_id}/return", response_model=ReturnEnvelope)
def return_book(book_id: int, payload: ReturnRequest, library: Library = Depends(get_library)):
    """Kopyaları iade al; en yeni ödünç kaydı önce azaltılır."""
    result = library.return_loan(book_id, payload.borrower_name, payload.borrower_phone, payload.count)
    return {
        "success": True,
        "message": "Book returned successfully",
        "data": {
            "book": result.book.to_dict(),
            "loans": [loan.to_dict() for loan in result.loans],
            "returned": result.returned,
        },
    }

@app.get("/loans/active", response_model=LoanListEnvelope)
def get_active_loans(book_id: Optional[int] = Query(None), library: Library = Depends(get_library)):
    loans = [loan.to_dict() for loan in library.list_active_loans(book_id)]
    return {"success": True, "count": len(loans), "data": loans}

@app.get("/loans/history", response_model=HistoryEnvelope)
def get_loan_history(
    book_id: Optional[int] = Query(None),
    q: Optional[str] = Query(None, description="Ödünç alan adı veya telefonunda arama"),
    library: Library = Depends(get_library),
):
    """Tüm ödünç kayıtları (aktif ve kapanmış), ödünç alana göre gruplanmış."""
    groups = [g.to_dict() for g in library.loan_history(book_id=book_id, query=q)]
    return {"success": True, "count": len(groups), "data": groups}

@app.get("/stats", response_model=StatsEnvelope)
def get_library_stats(library: Library = Depends(get_library)):
    """Kütüphane hakkında temel istatistikleri al."""
    return {"success": True, "data": library.get_statistics()}

@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs"}
