import logging
import os
import subprocess
import sys
import webbrowser
from functools import wraps
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table

import database
from config import settings
from errors import LibraryError
from library import Library, retry_on_conflict
from utils.ui_helpers import (
    print_book_list,
    print_discrepancies,
    print_history,
    print_loan_list,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Kütüphane CLI"

console = Console()
logger = logging.getLogger(__name__)


# Tekil Kütüphane örneği
class LibraryManager:
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        """Library singleton örneğini al veya oluştur."""
        current_db = getattr(database, "DATABASE_FILE", None)
        # Veritabanı dosyası değişirse (ör. test başına veritabanı), örneği yeniden oluştur
        if cls._instance is None or (cls._db_file_snapshot and current_db != cls._db_file_snapshot):
            cls._instance = Library()
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def report_errors(func):
    """Kütüphane hatalarını kullanıcıya okunur bir mesaj olarak yazdırıp 1 koduyla çık."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LibraryError as e:
            print(f"Hata: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI Uygulaması ---
app = typer.Typer(help="Kütüphane CLI")

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Çıktı formatı: plain | json | rich (varsayılan: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Ayrıntılı günlük çıktısı"),
):
    """CLI için genel seçenekler (ör. çıktı modu)."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level)
    # Kök günlükçüde zaten işleyici varsa basicConfig seviyeyi değiştirmez
    logging.getLogger().setLevel(level)
    if output:
        set_output_mode(output)

@app.command("list")
def cli_list(genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Türe göre filtrele")):
    """Tüm kitapları listele (en yeni önce)."""
    lib = LibraryManager.get_instance()
    print_book_list(lib.list_books(genre=genre))

@app.command("search")
def cli_search(
    query: str = typer.Argument(..., help="Başlık, yazar veya türde aranacak metin"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Gösterilecek maksimum sonuç"),
):
    """Başlık, yazar veya türe göre büyük/küçük harf duyarsız arama."""
    lib = LibraryManager.get_instance()
    print_book_list(lib.list_books(query=query, limit=limit))

@app.command("add")
@report_errors
def cli_add(
    title: str = typer.Option(..., "--title", "-t", help="Kitap başlığı"),
    author: str = typer.Option(..., "--author", "-a", help="Yazar"),
    year: int = typer.Option(..., "--year", "-y", help="Yayın yılı"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Tür (varsayılan: General)"),
    copies: Optional[int] = typer.Option(None, "--copies", "-c", help="Raftaki kopya sayısı (varsayılan: 1)"),
):
    """Kataloğa yeni bir kitap ekle."""
    lib = LibraryManager.get_instance()
    book = lib.add_book(title=title, author=author, year=year, genre=genre, copies_available=copies)
    print(f"Kitap eklendi: [{book.id}] {book.title} - {book.author} (kopya: {book.copies_available})")

@app.command("update")
@report_errors
def cli_update(
    book_id: int = typer.Argument(..., help="Kitap kimliği"),
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    author: Optional[str] = typer.Option(None, "--author", "-a"),
    year: Optional[int] = typer.Option(None, "--year", "-y"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    copies: Optional[int] = typer.Option(None, "--copies", "-c", help="Raftaki kopya sayısı"),
    total: Optional[int] = typer.Option(None, "--total", help="Sahip olunan toplam kopya"),
):
    """Bir kitabın alanlarını güncelle."""
    lib = LibraryManager.get_instance()
    book = lib.update_book(book_id, title=title, author=author, year=year, genre=genre,
                           copies_available=copies, total_copies=total)
    print(f"Kitap güncellendi: [{book.id}] {book.title} - {book.author} "
          f"(kopya: {book.copies_available}/{book.total_copies})")

@app.command("delete")
@report_errors
def cli_delete(
    book_id: int = typer.Argument(..., help="Kitap kimliği"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Onay sormadan sil"),
):
    """Bir kitabı sil (ödünçte kopyası varsa reddedilir)."""
    lib = LibraryManager.get_instance()
    book = lib.get_book(book_id)
    if not yes and not Confirm.ask(f"'{escape(book.title)}' silinsin mi?", default=False):
        print("Silme işlemi iptal edildi.")
        return
    lib.delete_book(book_id)
    print(f"Kitap silindi: [{book.id}] {book.title}")

@app.command("borrow")
@report_errors
def cli_borrow(
    book_id: int = typer.Argument(..., help="Kitap kimliği"),
    name: str = typer.Argument(..., help="Ödünç alanın adı"),
    phone: str = typer.Argument(..., help="Ödünç alanın telefonu"),
    copies: int = typer.Option(1, "--copies", "-c", help="Ödünç verilecek kopya sayısı"),
):
    """Bir kitaptan kopya ödünç ver."""
    lib = LibraryManager.get_instance()
    result = retry_on_conflict(lib.borrow, book_id, name, phone, copies)
    print(f"Ödünç verildi: '{result.book.title}' kitabından {copies} kopya -> {result.loan.borrower_name}")
    print(f"Kayıttaki kopya: {result.loan.copies} | Raftaki kopya: {result.book.copies_available}")

@app.command("return")
@report_errors
def cli_return(
    book_id: int = typer.Argument(..., help="Kitap kimliği"),
    name: str = typer.Argument(..., help="Ödünç alanın adı"),
    phone: str = typer.Argument(..., help="Ödünç alanın telefonu"),
    count: int = typer.Option(1, "--count", "-n", help="İade edilecek kopya sayısı"),
):
    """Kopyaları iade al (en yeni ödünç kaydından başlayarak)."""
    lib = LibraryManager.get_instance()
    result = lib.return_loan(book_id, name, phone, count)
    print(f"İade alındı: '{result.book.title}' kitabından {result.returned} kopya <- {name}")
    for loan in result.loans:
        state = "kapandı" if not loan.is_active else f"{loan.copies} kopya kaldı"
        print(f"  Kayıt #{loan.id}: {state}")
    print(f"Raftaki kopya: {result.book.copies_available}")

@app.command("loans")
def cli_loans(book_id: Optional[int] = typer.Option(None, "--book-id", "-b", help="Kitaba göre filtrele")):
    """Aktif ödünç kayıtlarını listele."""
    lib = LibraryManager.get_instance()
    print_loan_list(lib.list_active_loans(book_id))

@app.command("history")
def cli_history(
    book_id: Optional[int] = typer.Option(None, "--book-id", "-b", help="Kitaba göre filtrele"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Ad veya telefonda ara"),
):
    """Tüm ödünç kayıtlarını ödünç alana göre gruplanmış göster."""
    lib = LibraryManager.get_instance()
    print_history(lib.loan_history(book_id=book_id, query=query))

@app.command("stats")
def cli_stats():
    """Kütüphane istatistiklerini göster."""
    print_stats_result(LibraryManager.get_instance().get_statistics())

@app.command("audit")
def cli_audit():
    """Raftaki sayaçların aktif ödünçlerle tutarlı olup olmadığını denetle."""
    problems = LibraryManager.get_instance().check_invariants()
    print_discrepancies(problems)
    if problems:
        raise typer.Exit(code=1)

@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    no_browser: bool = typer.Option(False, "--no-browser", help="Tarayıcıyı açma"),
):
    """Uvicorn kullanarak REST API'yi başlat."""
    serve(host=host, port=port, open_browser=not no_browser)


def serve(host: Optional[str] = None, port: Optional[int] = None, open_browser: bool = True):
    """REST API için Uvicorn sunucusunu başlatır."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"API {url} adresinde başlatılıyor")
    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            console.print("[yellow]Web tarayıcısı otomatik olarak açılamadı.[/]")

    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if settings.debug:
        args.append("--reload")
    # API, CLI'nin o an kullandığı veritabanını sunmalı
    env = os.environ.copy()
    env["LIBRARY_DB_FILE"] = os.path.abspath(LibraryManager.get_instance().db_file)
    try:
        subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Hata:[/] `uvicorn` komutu bulunamadı. Lütfen ortamınızda yüklü olduğundan emin olun.")


# --- Etkileşimli menü ---
def _show_error(e: LibraryError) -> None:
    console.print(f"[bold red]❌ Hata:[/] {escape(e.message)}")

def list_all_books():
    """Kütüphanedeki tüm kitapları listeler."""
    books = list(LibraryManager.get_instance().list_books())
    if not books:
        console.print("[yellow]⚠️ Kütüphanede kitap yok.[/]")
        return

    table = Table(title="📚 Katalog", show_lines=True, header_style="bold cyan")
    table.add_column("ID", style="magenta", no_wrap=True)
    table.add_column("Başlık", style="white")
    table.add_column("Yazar", style="white")
    table.add_column("Tür", style="dim")
    table.add_column("Yıl", justify="right")
    table.add_column("Raftaki", justify="right", style="green")
    for book in books:
        table.add_row(str(book.id), escape(book.title), escape(book.author), escape(book.genre),
                      str(book.year), f"{book.copies_available}/{book.total_copies}")
    console.print(table)
    console.print(f"[dim]📊 Toplam {len(books)} kitap[/]")

def search():
    """Başlığa, yazara veya türe göre kitapları arar."""
    query = Prompt.ask("🔍 Arama terimi (başlık/yazar/tür)").strip()
    books = list(LibraryManager.get_instance().list_books(query=query))
    if not books:
        console.print(f"[yellow]🔍 '{escape(query)}' ile eşleşen kitap bulunamadı.[/]")
        return
    for b in books:
        console.print(f"- [bold]{escape(b.title)}[/] ({b.year}) - {escape(b.author)} | Kopya: {b.copies_available}")

def add():
    """Kataloğa adım adım kitap ekler."""
    lib = LibraryManager.get_instance()
    title = Prompt.ask("Kitap başlığı")
    author = Prompt.ask("Yazar")
    genre = Prompt.ask("Tür (isteğe bağlı)", default="")
    year = IntPrompt.ask("Yayın yılı")
    copies = IntPrompt.ask("Raftaki kopya", default=1)
    try:
        book = lib.add_book(title=title, author=author, year=year, genre=genre, copies_available=copies)
    except LibraryError as e:
        _show_error(e)
        return
    console.print(Panel.fit(f"[green]Eklendi:[/] [bold]{escape(book.title)}[/] - {escape(book.author)}",
                            title="✅ Başarılı", border_style="green"))

def borrow():
    """Rafta kopyası olan bir kitaptan ödünç verir."""
    lib = LibraryManager.get_instance()
    books = [b for b in lib.list_books() if b.copies_available > 0]
    if not books:
        console.print("[yellow]⚠️ Ödünç verilebilecek kitap yok.[/]")
        return
    for b in books:
        console.print(f"  [cyan]{b.id}[/]. {escape(b.title)} - {escape(b.author)} ({b.copies_available} kopya)")
    choices = [str(b.id) for b in books] + ["0"]
    book_id = int(Prompt.ask("Kitap seçin (0 = iptal)", choices=choices, show_choices=False))
    if book_id == 0:
        return
    name = Prompt.ask("Ödünç alanın adı")
    phone = Prompt.ask("Ödünç alanın telefonu")
    copies = IntPrompt.ask("Kaç kopya?", default=1)
    try:
        result = retry_on_conflict(lib.borrow, book_id, name, phone, copies)
    except LibraryError as e:
        _show_error(e)
        return
    console.print(f"[green]✅ '{escape(result.book.title)}' kitabından {copies} kopya "
                  f"{escape(result.loan.borrower_name)} kişisine verildi.[/]")

def return_copies():
    """Aktif ödüncü olan bir kitap ve ödünç alan seçip iade alır."""
    lib = LibraryManager.get_instance()
    summaries = lib.books_with_active_loans()
    if not summaries:
        console.print("[yellow]⚠️ Aktif ödünç kaydı yok.[/]")
        return
    for s in summaries:
        console.print(f"  [cyan]{s.book.id}[/]. {escape(s.book.title)} - "
                      f"{s.active_copies} kopya, {s.active_loans} kayıt")
    book_id = int(Prompt.ask("Kitap seçin (0 = iptal)", choices=[str(s.book.id) for s in summaries] + ["0"],
                             show_choices=False))
    if book_id == 0:
        return

    borrowers = lib.active_borrowers(book_id)
    for idx, b in enumerate(borrowers, 1):
        console.print(f"  [cyan]{idx}[/]. {escape(b.borrower_name)} ({escape(b.borrower_phone)}) - "
                      f"{b.active_copies} aktif kopya")
    pick = int(Prompt.ask("Ödünç alan seçin (0 = iptal)", choices=[str(i) for i in range(len(borrowers) + 1)],
                          show_choices=False))
    if pick == 0:
        return
    chosen = borrowers[pick - 1]
    count = IntPrompt.ask(f"Kaç kopya iade edilecek? (en fazla {chosen.active_copies})",
                          default=chosen.active_copies)
    try:
        result = lib.return_loan(book_id, chosen.borrower_name, chosen.borrower_phone, count)
    except LibraryError as e:
        _show_error(e)
        return
    console.print(f"[green]✅ {result.returned} kopya iade alındı. Raftaki kopya: {result.book.copies_available}[/]")

def history():
    """Ödünç geçmişini gösterir."""
    query = Prompt.ask("Ad veya telefon (boş = tümü)", default="")
    groups = LibraryManager.get_instance().loan_history(query=query or None)
    if not groups:
        console.print("[yellow]⚠️ Kayıt bulunamadı.[/]")
        return
    for g in groups:
        lines = [
            f"{escape(loan.display_title)} | {loan.borrowed_at[:10]} | {loan.copies_borrowed} kopya | "
            f"İade: {loan.returned_at[:10] if loan.returned_at else 'Hayır'}"
            for loan in g.loans
        ]
        console.print(Panel("\n".join(lines),
                            title=f"👤 {escape(g.borrower_name)} ({escape(g.borrower_phone)}) - toplam {g.total_copies}",
                            border_style="blue"))

def remove():
    """Kütüphaneden bir kitabı siler - onay ile."""
    lib = LibraryManager.get_instance()
    book_id = IntPrompt.ask("🔍 Silinecek kitabın kimliği")
    book = lib.find_book(book_id)
    if not book:
        console.print(f"[yellow]⚠️ [bold]{book_id}[/] kimlikli kitap bulunamadı.[/]")
        return
    if not Confirm.ask(f"🗑️ '{escape(book.title)}' silinsin mi?", default=False):
        console.print("[blue]🚫 Silme işlemi iptal edildi.[/]")
        return
    try:
        lib.delete_book(book_id)
    except LibraryError as e:
        _show_error(e)
        return
    console.print(f"[green]✅ [bold]{escape(book.title)}[/] başarıyla silindi.[/]")

def stats():
    """Kütüphane istatistiklerini gösterir."""
    s = LibraryManager.get_instance().get_statistics()
    console.print(Panel.fit(
        f"[bold]Kitap:[/] {s['total_books']}\n"
        f"[bold]Toplam kopya:[/] {s['total_copies']}\n"
        f"[bold]Raftaki:[/] {s['copies_available']}\n"
        f"[bold]Ödünçte:[/] {s['copies_on_loan']} ({s['active_loans']} kayıt)\n"
        f"[bold]Ödünç alan:[/] {s['borrowers']}",
        title="📊 İstatistikler",
        border_style="blue",
    ))

def run_menu():
    """Kütüphane CLI için basit ve etkileşimli menü."""
    menu_items = [
        ("1", "Tüm kitapları listele", "📚", list_all_books),
        ("2", "Kitap ara", "🔎", search),
        ("3", "Kitap ekle", "➕", add),
        ("4", "Ödünç ver", "📤", borrow),
        ("5", "İade al", "📥", return_copies),
        ("6", "Ödünç geçmişi", "📖", history),
        ("7", "Kitap sil", "🗑️", remove),
        ("8", "İstatistikler", "📊", stats),
        ("9", "REST API'yi başlat", "🌐", serve),
    ]
    actions = {key: action for key, _, _, action in menu_items}

    while True:
        table = Table.grid(padding=(0, 2))
        table.add_column(justify="right", style="bold cyan", width=4)
        table.add_column(justify="left", style="white")
        for key, label, icon, _ in menu_items:
            table.add_row(f"[reverse]{key}[/]", f"{icon} {label}")
        table.add_row("[reverse]0[/]", "🚪 Çıkış")
        console.print(Panel(table, title=APP_NAME, border_style="cyan", box=box.HEAVY, padding=(1, 2)))

        choice = Prompt.ask("Lütfen bir seçenek belirtin", choices=list(actions) + ["0"], default="1").strip()
        if choice == "0":
            console.print("[green]Hoşçakalın![/]")
            break
        actions[choice]()
        print()  # işlemler arasında boşluk bırakır


if __name__ == "__main__":
    if len(sys.argv) > 1:
        app()
    else:
        run_menu()
