import os
import json
from typing import List, Any, Dict, Iterable
from rich.console import Console
from rich.table import Table
from rich.markup import escape
from rich.panel import Panel

# Environment variable to control CLI output mode
# İzin verilen değerler: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode
    # Geçersiz değerleri yoksay; mevcut varsayılanı koru

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False))

def print_book_list(books: Iterable[Any]) -> None:
    """Kitap listesini mevcut çıktı moduna göre yazdır.
    - plain: '[id] Title (year) by Author | genre | available/total' satırları
    - json: to_dict() dizisi
    - rich: Rich tablosu
    """
    books = list(books)
    mode = get_output_mode()

    if not books:
        # Boş durum için mesaj tüm modlarda aynı
        print("No books in library.")
        return

    if mode == "json":
        _print_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Genre", style="dim")
        table.add_column("Year", justify="right")
        table.add_column("Available", justify="right", style="green")
        for b in books:
            table.add_row(str(b.id), escape(b.title), escape(b.author), escape(b.genre), str(b.year),
                          f"{b.copies_available}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"[{b.id}] {b.title} ({b.year}) by {b.author} | {b.genre} | "
                  f"Copies: {b.copies_available}/{b.total_copies}")

def print_loan_list(loans: Iterable[Any]) -> None:
    """Aktif ödünç kayıtlarını yazdır."""
    loans = list(loans)
    mode = get_output_mode()

    if not loans:
        print("No active loans.")
        return

    if mode == "json":
        _print_json([loan.to_dict() for loan in loans])
    elif mode == "rich":
        table = Table(title="📖 Active loans", show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Phone", style="dim")
        table.add_column("Copies", justify="right", style="yellow")
        table.add_column("Borrowed at", style="dim")
        for loan in loans:
            table.add_row(str(loan.id), escape(loan.display_title), escape(loan.borrower_name),
                          escape(loan.borrower_phone), str(loan.copies), loan.borrowed_at)
        _console.print(table)
    else:
        for loan in loans:
            print(f"#{loan.id} {loan.display_title} | {loan.borrower_name} ({loan.borrower_phone}) | "
                  f"Copies: {loan.copies} | Borrowed: {loan.borrowed_at}")

def print_history(groups: List[Any]) -> None:
    """Ödünç geçmişini ödünç alana göre gruplanmış olarak yazdır."""
    mode = get_output_mode()

    if not groups:
        print("No borrow records.")
        return

    if mode == "json":
        _print_json([g.to_dict() for g in groups])
        return

    for g in groups:
        header = (f"{g.borrower_name} ({g.borrower_phone}) - total {g.total_copies} copies, "
                  f"{g.active_copies} still out")
        lines = []
        for loan in g.loans:
            returned = loan.returned_at or "No"
            lines.append(f"- {loan.display_title} | Borrowed: {loan.borrowed_at} | "
                         f"Copies: {loan.copies_borrowed} | Returned: {returned}")
        if mode == "rich":
            _console.print(Panel(escape("\n".join(lines)), title=f"👤 {escape(header)}", border_style="blue"))
        else:
            print(header)
            for line in lines:
                print(f"  {line}")

def print_stats_result(stats: Dict[str, Any]) -> None:
    """İstatistikleri mevcut çıktı moduna göre yazdır."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("total_books", "Total Books"),
        ("total_copies", "Total Copies"),
        ("copies_available", "Copies Available"),
        ("copies_on_loan", "Copies On Loan"),
        ("active_loans", "Active Loans"),
        ("borrowers", "Borrowers"),
    ]

    if mode == "json":
        _print_json({key: stats.get(key, 0) for key, _ in labels})
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels:
            print(f"{label}: {stats.get(key, 0)}")

def print_discrepancies(problems: List[Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        _print_json([p.to_dict() for p in problems])
        return
    if not problems:
        print("All counters reconcile.")
        return
    for p in problems:
        print(f"[{p.book_id}] {p.title}: available={p.copies_available} "
              f"expected={p.expected_available} (total {p.total_copies}, on loan {p.active_copies})")
