"""
Web service that accepts EPUB uploads, keeps opened books in memory and pages
through their chapters for the reading view.
"""

import html
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from epub_extractor import EpubParseError, ParsedBook, parse_epub, release_book
from resources import HANDLE_PREFIX, ResourceStore, default_store

logger = logging.getLogger(__name__)

MAX_UPLOAD_MB = float(os.environ.get("PAGETURN_MAX_UPLOAD_MB", "100"))
MAX_UPLOAD_BYTES = int(MAX_UPLOAD_MB * 1024 * 1024)


# --- Middleware ---

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds conservative security headers to every response."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
        return response


class CacheControlMiddleware(BaseHTTPMiddleware):
    """Resource handles are never reused, so their bytes can be cached forever."""

    STATIC_PREFIXES = (HANDLE_PREFIX,)

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        if response.status_code == 200 and request.url.path.startswith(self.STATIC_PREFIXES):
            response.headers["Cache-Control"] = "public, max-age=31536000, immutable"
        return response


app = FastAPI(title="Pageturn")
app.add_middleware(CacheControlMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


async def _run_sync(func, *args, **kwargs):
    """Run blocking extraction work off the event loop."""
    return await run_in_threadpool(func, *args, **kwargs)


# --- Library of opened books ---

@dataclass
class OpenBook:
    book_id: str
    filename: str
    book: ParsedBook
    opened_at: str


class Library:
    """Books currently open in the reader, keyed by book id."""

    def __init__(self, store: ResourceStore):
        self.store = store
        self._books: Dict[str, OpenBook] = {}
        self._lock = threading.Lock()

    def add(self, filename: str, book: ParsedBook) -> OpenBook:
        entry = OpenBook(
            book_id=uuid.uuid4().hex,
            filename=filename,
            book=book,
            opened_at=datetime.now().isoformat(),
        )
        with self._lock:
            self._books[entry.book_id] = entry
        return entry

    def get(self, book_id: str) -> Optional[OpenBook]:
        with self._lock:
            return self._books.get(book_id)

    def list(self) -> List[OpenBook]:
        with self._lock:
            return list(self._books.values())

    def close(self, book_id: str) -> bool:
        """Forget a book and release its images and cover."""
        with self._lock:
            entry = self._books.pop(book_id, None)
        if entry is None:
            return False
        released = release_book(entry.book, self.store)
        logger.info("Closed %s, released %d resources", entry.filename, released)
        return True

    def close_all(self):
        for entry in self.list():
            self.close(entry.book_id)


library = Library(default_store)


def get_open_book(book_id: str) -> OpenBook:
    entry = library.get(book_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return entry


def book_summary(entry: OpenBook) -> dict:
    book = entry.book
    return {
        "book_id": entry.book_id,
        "filename": entry.filename,
        "title": book.title,
        "author": book.author,
        "cover": book.cover,
        "language": book.metadata.language,
        "chapter_count": len(book.chapters),
        "opened_at": entry.opened_at,
    }


def table_of_contents(book: ParsedBook) -> List[dict]:
    return [
        {"index": index, "id": chapter.id, "title": chapter.title, "order": chapter.order}
        for index, chapter in enumerate(book.chapters)
    ]


def chapter_page(book: ParsedBook, index: int) -> dict:
    """One page of the reading view, with navigation and progress."""
    total = len(book.chapters)
    chapter = book.chapters[index]
    return {
        "index": index,
        "total": total,
        "previous": index - 1 if index > 0 else None,
        "next": index + 1 if index < total - 1 else None,
        "progress": round((index + 1) / total * 100, 1),
        "chapter": {
            "id": chapter.id,
            "title": chapter.title,
            "order": chapter.order,
            "content": chapter.content,
        },
    }


# --- Routes ---

LANDING_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>Pageturn Reader</title></head>
<body>
<h1>Pageturn Reader</h1>
<p>Upload your EPUB book to start reading.</p>
<form action="/upload" method="post" enctype="multipart/form-data">
<input type="file" name="file" accept=".epub">
<button type="submit">Choose EPUB File</button>
</form>
<ul>{books}</ul>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse)
async def landing():
    books = "".join(
        f"<li>{html.escape(entry.book.title)} by {html.escape(entry.book.author)}</li>"
        for entry in library.list()
    )
    return LANDING_PAGE.format(books=books)


@app.post("/upload", status_code=201)
async def upload_book(file: UploadFile = File(...)):
    filename = file.filename or ""
    if not filename.lower().endswith(".epub"):
        raise HTTPException(status_code=400, detail="Only .epub files are supported")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"File exceeds {MAX_UPLOAD_MB:g} MB limit")

    try:
        book = await _run_sync(parse_epub, data, library.store)
    except EpubParseError as e:
        logger.error("Error parsing EPUB %s: %s", filename, e)
        raise HTTPException(status_code=422, detail=e.user_message)

    entry = library.add(filename, book)
    logger.info("Opened %s as %s", filename, entry.book_id)
    summary = book_summary(entry)
    summary["chapters"] = table_of_contents(book)
    summary["warnings"] = book.warnings
    return summary


@app.get("/api/books")
async def list_books():
    return {"books": [book_summary(entry) for entry in library.list()]}


@app.get("/api/books/{book_id}")
async def get_book(book_id: str):
    entry = get_open_book(book_id)
    summary = book_summary(entry)
    summary["chapters"] = table_of_contents(entry.book)
    return summary


@app.get("/api/books/{book_id}/chapters/{index}")
async def get_chapter(book_id: str, index: int):
    entry = get_open_book(book_id)
    if not 0 <= index < len(entry.book.chapters):
        raise HTTPException(status_code=404, detail="Chapter not found")
    page = chapter_page(entry.book, index)
    page["book_title"] = entry.book.title
    return page


@app.delete("/api/books/{book_id}", status_code=204)
async def close_book(book_id: str):
    if not library.close(book_id):
        raise HTTPException(status_code=404, detail="Book not found")
    return Response(status_code=204)


@app.get(HANDLE_PREFIX + "{token}")
async def get_resource(token: str):
    resource = library.store.get(token)
    if resource is None:
        raise HTTPException(status_code=404, detail="Resource not found")
    return Response(content=resource.data, media_type=resource.media_type)
