"""
Extracts an EPUB archive into a structured object that the reader service can page through.
"""

import argparse
import json
import logging
import os
import posixpath
import re
import sys
import warnings
import zipfile
import zlib
from dataclasses import dataclass, field, asdict
from io import BytesIO
from typing import Callable, Dict, Iterable, List, Optional, TypeVar
from urllib.parse import unquote

from bs4 import (
    BeautifulSoup,
    Declaration,
    Doctype,
    ProcessingInstruction,
    XMLParsedAsHTMLWarning,
)

from resources import ResourceStore, default_store, guess_media_type

# Content documents are usually XHTML; html.parser handles them fine.
warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTAINER_PATH = "META-INF/container.xml"
PACKAGE_EXTENSION = ".opf"

UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_AUTHOR = "Unknown Author"
GENERIC_ERROR_MESSAGE = "Please ensure the file is a valid EPUB format."

COVER_FILENAMES = [
    "cover.jpg", "cover.jpeg", "cover.png",
    "Cover.jpg", "Cover.jpeg", "Cover.png",
]

CHAPTER_TITLE_CLASSES = [
    "chapter-title", "chapter_title", "chaptertitle",
    "chapter-heading", "chapterhead", "title",
]

LEADING_RELATIVE_RE = re.compile(r"^\.\.?/")
URI_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:")
STRUCTURAL_TAG_RE = re.compile(r"</?(?:html|head|body)\b[^>]*>", re.IGNORECASE)
WHITESPACE_RE = re.compile(r"\s+")
CHAPTER_PREFIX_RE = re.compile(
    r"^(?i:chapter\b|ch\.)\s*(?:\d+|[IVXLCDM]+\b)?\s*[:.\-–—]?\s*"
)
NUMBERED_PREFIX_RE = re.compile(r"^\d+\.\s*")

# What reading a damaged archive entry can raise
ENTRY_READ_ERRORS = (
    zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError, NotImplementedError,
)


# --- Errors ---

class EpubParseError(Exception):
    """A fatal extraction failure. `user_message` is what readers get to see."""
    user_message = GENERIC_ERROR_MESSAGE


class MalformedArchiveError(EpubParseError):
    """The bytes are not a zip archive, or no package document can be located."""


class MissingPackageDocumentError(EpubParseError):
    """The package document path was resolved but the archive has no such entry."""


# --- Data structures ---

@dataclass
class ManifestItem:
    id: str
    href: str
    media_type: str = ""
    title: Optional[str] = None
    properties: str = ""


@dataclass
class PackageDocument:
    """The parsed OPF plus where it lives inside the archive."""
    path: str
    base_path: str                       # Directory of the OPF, '' at the root
    soup: BeautifulSoup
    manifest: Dict[str, ManifestItem]


@dataclass
class SpineEntry:
    order: int        # Index in the original spine, skipped slots included
    item: ManifestItem
    path: str         # Archive path of the content document


@dataclass
class Chapter:
    """One spine item, ready for display."""
    id: str           # Manifest item id
    title: str        # Derived display title
    content: str      # Sanitized HTML fragment with image handles
    order: int        # 0-based spine position
    href: str = ""    # Archive path of the content document
    text: str = ""    # Plain text for search and word counts


@dataclass
class BookMetadata:
    title: str
    author: str
    cover: Optional[str] = None       # Resource handle
    language: Optional[str] = None


@dataclass
class ParsedBook:
    """Everything one extraction produced."""
    metadata: BookMetadata
    chapters: List[Chapter] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    # Every handle this parse created; release them when the book is closed
    resources: List[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        return self.metadata.title

    @property
    def author(self) -> str:
        return self.metadata.author

    @property
    def cover(self) -> Optional[str]:
        return self.metadata.cover

    def to_dict(self) -> dict:
        return {
            "title": self.metadata.title,
            "author": self.metadata.author,
            "cover": self.metadata.cover,
            "language": self.metadata.language,
            "chapters": [asdict(chapter) for chapter in self.chapters],
            "warnings": list(self.warnings),
        }


# --- Utilities ---

def first_match(candidates: Iterable[Callable[[], Optional[T]]]) -> Optional[T]:
    """Evaluate candidates in order, returning the first truthy result."""
    for candidate in candidates:
        result = candidate()
        if result:
            return result
    return None


def collapse_whitespace(text: Optional[str]) -> str:
    return " ".join(text.split()) if text else ""


def join_base(base_path: str, href: str) -> str:
    return f"{base_path}/{href}" if base_path else href


def clean_html_content(soup: BeautifulSoup) -> BeautifulSoup:
    """Remove script and style elements wherever they are nested."""
    for tag in soup.find_all(["script", "style"]):
        # A nested match is gone once its ancestor has been decomposed
        if not tag.decomposed:
            tag.decompose()
    return soup


def extract_plain_text(soup: BeautifulSoup) -> str:
    """Extract clean text for search and word counts."""
    text = soup.get_text(separator=" ")
    return " ".join(text.split())


def normalize_fragment(html: str) -> str:
    html = STRUCTURAL_TAG_RE.sub("", html)
    return WHITESPACE_RE.sub(" ", html).strip()


def rewrite_image_sources(
    soup: BeautifulSoup, resolve_image: Callable[[str], Optional[str]]
) -> int:
    """
    Point <img src> and SVG <image href> at resolved handles.
    Unresolvable references are left as they are. Returns the number rewritten.
    """
    rewritten = 0
    targets = [("img", ["src"]), ("image", ["xlink:href", "href"])]
    for tag_name, attributes in targets:
        for element in soup.find_all(tag_name):
            for attribute in attributes:
                reference = element.get(attribute)
                if not reference:
                    continue
                handle = resolve_image(reference)
                if handle:
                    element[attribute] = handle
                    rewritten += 1
                break
    return rewritten


def sanitize_content(
    soup: BeautifulSoup, resolve_image: Callable[[str], Optional[str]]
) -> str:
    """Turn a parsed content document into a flat, display-ready HTML fragment."""
    clean_html_content(soup)
    rewrite_image_sources(soup, resolve_image)

    body = soup.find("body")
    if body is not None:
        html = body.decode_contents()
    else:
        # No body to scope to: drop the prolog and head so only content remains
        for node in list(soup.contents):
            if isinstance(node, (Declaration, Doctype, ProcessingInstruction)):
                node.extract()
        head = soup.find("head")
        if head is not None:
            head.decompose()
        html = soup.decode()
    return normalize_fragment(html)


def image_path_variants(
    reference: str, base_path: str, document_dir: Optional[str] = None
) -> List[str]:
    """
    Candidate archive paths for an image reference, in probing order.
    """
    stripped = LEADING_RELATIVE_RE.sub("", reference, count=1)
    variants = [
        stripped,
        join_base(base_path, stripped),
        reference,
        join_base(base_path, reference),
    ]
    variants.extend([unquote(v) for v in variants])
    if document_dir is not None:
        relative = posixpath.join(document_dir, unquote(reference))
        variants.append(posixpath.normpath(relative))

    unique = []
    for variant in variants:
        if variant not in unique:
            unique.append(variant)
    return unique


def normalize_title(title: str) -> str:
    """
    'Chapter 3: The Awakening' -> 'The Awakening', '4. Into Darkness' -> 'Into Darkness'.
    A title that is nothing but a prefix is kept whole.
    """
    title = collapse_whitespace(title)
    stripped = CHAPTER_PREFIX_RE.sub("", title, count=1)
    stripped = NUMBERED_PREFIX_RE.sub("", stripped, count=1).strip()
    return stripped or title


# --- Package document ---

def locate_package_document(archive: zipfile.ZipFile) -> str:
    """
    Find the OPF path: container.xml first, then the first entry named *.opf.
    """
    names = archive.namelist()

    if CONTAINER_PATH in names:
        try:
            container = BeautifulSoup(archive.read(CONTAINER_PATH), "xml")
        except ENTRY_READ_ERRORS as e:
            logger.debug("Unreadable %s: %s", CONTAINER_PATH, e)
        else:
            rootfile = container.find("rootfile")
            full_path = rootfile.get("full-path") if rootfile is not None else None
            if full_path and full_path.strip():
                return full_path.strip().lstrip("/")

    # Archive enumeration order decides between several candidates
    for name in names:
        if name.lower().endswith(PACKAGE_EXTENSION):
            logger.info("No usable %s, falling back to %s", CONTAINER_PATH, name)
            return name

    raise MalformedArchiveError("Could not find a package document in the archive")


def build_manifest(opf: BeautifulSoup) -> Dict[str, ManifestItem]:
    manifest: Dict[str, ManifestItem] = {}
    section = opf.find("manifest")
    if section is None:
        return manifest

    for item in section.find_all("item"):
        item_id = item.get("id")
        href = item.get("href")
        if not item_id or not href or item_id in manifest:
            continue
        manifest[item_id] = ManifestItem(
            id=item_id,
            href=href,
            media_type=item.get("media-type", ""),
            title=item.get("title"),
            properties=item.get("properties", ""),
        )
    return manifest


def load_package_document(archive: zipfile.ZipFile, path: str) -> PackageDocument:
    if path not in archive.namelist():
        raise MissingPackageDocumentError(f"Package document {path} not found in archive")
    try:
        raw = archive.read(path)
    except ENTRY_READ_ERRORS as e:
        raise MalformedArchiveError(f"Could not read package document {path}: {e}") from e

    soup = BeautifulSoup(raw, "xml")
    return PackageDocument(
        path=path,
        base_path=posixpath.dirname(path),
        soup=soup,
        manifest=build_manifest(soup),
    )


def find_metadata_text(metadata, *names: str) -> Optional[str]:
    """First non-empty text among the named elements, namespaced names first."""
    for name in names:
        element = metadata.find(name)
        if element is not None:
            text = collapse_whitespace(element.get_text())
            if text:
                return text
    return None


def extract_metadata(opf: BeautifulSoup) -> BookMetadata:
    metadata = opf.find("metadata") or opf
    return BookMetadata(
        title=find_metadata_text(metadata, "dc:title", "title") or UNKNOWN_TITLE,
        author=find_metadata_text(metadata, "dc:creator", "creator") or UNKNOWN_AUTHOR,
        language=find_metadata_text(metadata, "dc:language", "language"),
    )


def resolve_spine(package: PackageDocument) -> List[SpineEntry]:
    """
    Spine items in reading order. Entries that do not resolve are dropped,
    but the survivors keep their original spine index as `order`.
    """
    spine = package.soup.find("spine")
    if spine is None:
        return []

    entries = []
    for order, itemref in enumerate(spine.find_all("itemref")):
        idref = itemref.get("idref")
        item = package.manifest.get(idref) if idref else None
        if item is None:
            logger.debug("Spine entry %d (%r) has no manifest item", order, idref)
            continue
        entries.append(SpineEntry(
            order=order,
            item=item,
            path=join_base(package.base_path, item.href),
        ))
    return entries


# --- Chapter titles ---

def first_nav_label(opf: BeautifulSoup) -> str:
    """
    Label of the first navPoint carrying a playOrder, wherever it is.
    Not matched to any particular chapter.
    """
    nav_point = opf.find("navPoint", attrs={"playOrder": True})
    if nav_point is None:
        return ""
    label = nav_point.find("navLabel")
    return collapse_whitespace(label.get_text()) if label is not None else ""


def title_from_markup(soup: BeautifulSoup) -> str:
    for tag_name in ("h1", "h2", "h3", "title"):
        element = soup.find(tag_name)
        if element is not None:
            text = collapse_whitespace(element.get_text())
            if text:
                return text

    element = soup.find(class_=CHAPTER_TITLE_CLASSES)
    if element is not None:
        return collapse_whitespace(element.get_text())
    return ""


def derive_chapter_title(
    soup: BeautifulSoup, package: PackageDocument, item: ManifestItem, order: int
) -> str:
    title = first_match([
        lambda: collapse_whitespace(item.title),
        lambda: first_nav_label(package.soup),
        lambda: title_from_markup(soup),
    ])
    if title:
        return normalize_title(title)
    return f"Chapter {order + 1}"


# --- Main Conversion Logic ---

class ExtractionSession:
    """
    State for a single parse: the open archive, the package document and the
    image cache. Nothing here outlives the call.
    """

    def __init__(self, archive: zipfile.ZipFile, store: ResourceStore):
        self.archive = archive
        self.store = store
        self.entries = {name for name in archive.namelist() if not name.endswith("/")}
        self.package: Optional[PackageDocument] = None
        self.image_cache: Dict[str, str] = {}      # original reference -> handle
        self._entry_handles: Dict[str, str] = {}   # archive path -> handle
        self._media_types: Dict[str, str] = {}
        self.resources: List[str] = []
        self.warnings: List[str] = []

    @property
    def base_path(self) -> str:
        return self.package.base_path if self.package else ""

    def run(self) -> ParsedBook:
        path = locate_package_document(self.archive)
        self.package = load_package_document(self.archive, path)
        logger.info("Package document %s (base path %r)", path, self.base_path)

        for item in self.package.manifest.values():
            if item.media_type:
                self._media_types[join_base(self.base_path, item.href)] = item.media_type

        metadata = extract_metadata(self.package.soup)
        metadata.cover = self.extract_cover()
        chapters = self.extract_chapters()
        logger.info(
            "Extracted '%s' by %s: %d chapters, %d resources",
            metadata.title, metadata.author, len(chapters), len(self.resources),
        )

        return ParsedBook(
            metadata=metadata,
            chapters=chapters,
            warnings=list(self.warnings),
            resources=list(self.resources),
        )

    # Images

    def _handle_for_entry(self, path: str) -> str:
        if path in self._entry_handles:
            return self._entry_handles[path]
        data = self.archive.read(path)
        media_type = self._media_types.get(path) or guess_media_type(path)
        handle = self.store.create(data, media_type)
        self._entry_handles[path] = handle
        self.resources.append(handle)
        return handle

    def resolve_image(self, reference: str, document_dir: Optional[str] = None) -> Optional[str]:
        """
        Map an image reference to a resource handle, probing path variants in
        a fixed order. Returns None when nothing in the archive matches.
        """
        if reference in self.image_cache:
            return self.image_cache[reference]
        if not reference or URI_SCHEME_RE.match(reference):
            return None

        for path in image_path_variants(reference, self.base_path, document_dir):
            if path not in self.entries:
                continue
            try:
                handle = self._handle_for_entry(path)
            except Exception as e:
                logger.debug("Could not read image %s: %s", path, e)
                return None
            self.image_cache[reference] = handle
            return handle

        logger.debug("Image %s not found in archive", reference)
        return None

    # Cover

    def _cover_from_meta(self) -> Optional[str]:
        meta = self.package.soup.find("meta", attrs={"name": "cover"})
        item_id = meta.get("content") if meta is not None else None
        item = self.package.manifest.get(item_id) if item_id else None
        return self.resolve_image(item.href) if item else None

    def _cover_from_properties(self) -> Optional[str]:
        for item in self.package.manifest.values():
            if "cover-image" in item.properties.split():
                return self.resolve_image(item.href)
        return None

    def _cover_from_filenames(self) -> Optional[str]:
        return first_match(
            lambda name=name: self.resolve_image(join_base(self.base_path, name))
            for name in COVER_FILENAMES
        )

    def extract_cover(self) -> Optional[str]:
        try:
            return first_match([
                self._cover_from_meta,
                self._cover_from_properties,
                self._cover_from_filenames,
            ])
        except Exception as e:
            logger.debug("Cover extraction failed: %s", e)
            return None

    # Chapters

    def _find_entry(self, path: str) -> Optional[str]:
        for candidate in (path, unquote(path)):
            if candidate in self.entries:
                return candidate
        return None

    def _build_chapter(self, entry: SpineEntry) -> Optional[Chapter]:
        path = self._find_entry(entry.path)
        if path is None:
            self._warn(f"Content document {entry.path} not found in archive")
            return None

        soup = BeautifulSoup(self.archive.read(path), "html.parser")

        try:
            title = derive_chapter_title(soup, self.package, entry.item, entry.order)
        except Exception as e:
            logger.debug("Title derivation failed for %s: %s", path, e)
            title = f"Chapter {entry.order + 1}"

        document_dir = posixpath.dirname(path)
        content = sanitize_content(
            soup, lambda reference: self.resolve_image(reference, document_dir)
        )
        body = soup.find("body")

        return Chapter(
            id=entry.item.id,
            title=title,
            content=content,
            order=entry.order,
            href=path,
            text=extract_plain_text(body if body is not None else soup),
        )

    def extract_chapters(self) -> List[Chapter]:
        chapters = []
        for entry in resolve_spine(self.package):
            try:
                chapter = self._build_chapter(entry)
            except Exception as e:
                self._warn(f"Failed to process chapter {entry.path}: {e}")
                continue
            if chapter is not None:
                chapters.append(chapter)
        return sorted(chapters, key=lambda chapter: chapter.order)

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)


def parse_epub(data: bytes, store: Optional[ResourceStore] = None) -> ParsedBook:
    """
    Extract metadata, cover and ordered chapters from raw EPUB bytes.

    Raises MalformedArchiveError or MissingPackageDocumentError; every other
    problem degrades the result instead (see ParsedBook.warnings).
    """
    store = store if store is not None else default_store
    try:
        archive = zipfile.ZipFile(BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as e:
        raise MalformedArchiveError(f"Not a zip archive: {e}") from e

    with archive:
        return ExtractionSession(archive, store).run()


def release_book(book: ParsedBook, store: Optional[ResourceStore] = None) -> int:
    """Release every resource handle a parse created. Returns how many were live."""
    store = store if store is not None else default_store
    return store.release_all(book.resources)


def save_to_json(book: ParsedBook, output_path: str):
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(book.to_dict(), f, ensure_ascii=False, indent=2)
    print(f"Saved structured data to {output_path}")


# --- CLI ---

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Extract metadata, cover and chapters from an EPUB file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python epub_extractor.py book.epub
  python epub_extractor.py book.epub --json book.json
        """,
    )
    parser.add_argument("epub", help="Path to the EPUB file")
    parser.add_argument(
        "--json",
        metavar="OUT",
        help="Write the title, author and chapter list to this JSON file",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if not os.path.exists(args.epub):
        print(f"File not found: {args.epub}")
        return 1

    with open(args.epub, 'rb') as f:
        raw_bytes = f.read()

    try:
        book_obj = parse_epub(raw_bytes)
    except EpubParseError as e:
        print(f"Failed to parse EPUB file: {e}. {e.user_message}")
        return 1

    if args.json:
        save_to_json(book_obj, args.json)

    print("\n--- Summary ---")
    print(f"Title: {book_obj.title}")
    print(f"Author: {book_obj.author}")
    print(f"Cover: {'yes' if book_obj.cover else 'no'}")
    print(f"Chapters: {len(book_obj.chapters)}")
    for chapter in book_obj.chapters:
        print(f"  [{chapter.order}] {chapter.title}")
    print(f"Images extracted: {len(book_obj.resources)}")
    if book_obj.warnings:
        print(f"Warnings: {len(book_obj.warnings)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
