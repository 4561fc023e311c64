"""
Tests for locating and reading the package document: container lookup,
metadata, manifest and spine resolution.
"""

import io
import zipfile

import pytest
from bs4 import BeautifulSoup

from epub_extractor import (
    MalformedArchiveError,
    MissingPackageDocumentError,
    build_manifest,
    extract_metadata,
    load_package_document,
    locate_package_document,
    resolve_spine,
)
from epub_factory import build_opf, make_epub


def open_archive(data):
    return zipfile.ZipFile(io.BytesIO(data))


def opf_soup(opf):
    return BeautifulSoup(opf, "xml")


class TestLocatePackageDocument:

    def test_reads_container_xml(self):
        data = make_epub({"OPS/book.opf": build_opf()}, opf_path="OPS/book.opf")
        with open_archive(data) as archive:
            assert locate_package_document(archive) == "OPS/book.opf"

    def test_falls_back_to_opf_scan_without_container(self):
        data = make_epub({"content/package.opf": build_opf()}, container=False)
        with open_archive(data) as archive:
            assert locate_package_document(archive) == "content/package.opf"

    def test_falls_back_when_rootfile_lacks_path(self):
        container = (
            '<?xml version="1.0"?><container xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
            "<rootfiles><rootfile media-type=\"application/oebps-package+xml\"/></rootfiles></container>"
        )
        data = make_epub({"book.opf": build_opf()}, container_xml=container)
        with open_archive(data) as archive:
            assert locate_package_document(archive) == "book.opf"

    def test_first_opf_in_archive_order_wins(self):
        data = make_epub(
            {"b/second.opf": build_opf(), "a/first.opf": build_opf()},
            container=False,
        )
        with open_archive(data) as archive:
            assert locate_package_document(archive) == "b/second.opf"

    def test_no_package_document_is_malformed(self):
        data = make_epub({"readme.txt": "hello"}, container=False)
        with open_archive(data) as archive:
            with pytest.raises(MalformedArchiveError):
                locate_package_document(archive)


class TestLoadPackageDocument:

    def test_base_path_is_opf_directory(self):
        data = make_epub({"OEBPS/content.opf": build_opf()})
        with open_archive(data) as archive:
            package = load_package_document(archive, "OEBPS/content.opf")
        assert package.base_path == "OEBPS"
        assert package.path == "OEBPS/content.opf"

    def test_root_level_opf_has_empty_base(self):
        data = make_epub({"content.opf": build_opf()}, opf_path="content.opf")
        with open_archive(data) as archive:
            package = load_package_document(archive, "content.opf")
        assert package.base_path == ""

    def test_missing_entry_raises(self):
        data = make_epub({"other.opf": build_opf()})
        with open_archive(data) as archive:
            with pytest.raises(MissingPackageDocumentError):
                load_package_document(archive, "OEBPS/content.opf")


class TestExtractMetadata:

    def test_namespaced_title_and_creator(self):
        metadata = extract_metadata(opf_soup(build_opf(title="Dune", author="Frank Herbert")))
        assert metadata.title == "Dune"
        assert metadata.author == "Frank Herbert"

    def test_bare_elements(self):
        opf = (
            '<package><metadata><title>Bare Title</title>'
            "<creator>Bare Author</creator></metadata></package>"
        )
        metadata = extract_metadata(opf_soup(opf))
        assert metadata.title == "Bare Title"
        assert metadata.author == "Bare Author"

    def test_defaults_when_absent(self):
        metadata = extract_metadata(opf_soup(build_opf(title=None, author=None)))
        assert metadata.title == "Unknown Title"
        assert metadata.author == "Unknown Author"

    def test_defaults_when_empty(self):
        metadata = extract_metadata(opf_soup(build_opf(title="   ", author="")))
        assert metadata.title == "Unknown Title"
        assert metadata.author == "Unknown Author"

    def test_first_creator_only(self):
        opf = build_opf(
            author="First Author",
            extra_metadata="    <dc:creator>Second Author</dc:creator>",
        )
        assert extract_metadata(opf_soup(opf)).author == "First Author"

    def test_language(self):
        opf = build_opf(extra_metadata="    <dc:language>fr</dc:language>")
        assert extract_metadata(opf_soup(opf)).language == "fr"


class TestManifest:

    def test_build_manifest(self):
        opf = build_opf(items=[
            ("ch1", "one.xhtml", "application/xhtml+xml", 'title="Opening"'),
            ("img", "pic.png", "image/png", 'properties="cover-image"'),
        ])
        manifest = build_manifest(opf_soup(opf))
        assert manifest["ch1"].href == "one.xhtml"
        assert manifest["ch1"].title == "Opening"
        assert manifest["img"].media_type == "image/png"
        assert manifest["img"].properties == "cover-image"

    def test_duplicate_ids_keep_first(self):
        opf = build_opf(items=[
            ("dup", "first.xhtml", "application/xhtml+xml"),
            ("dup", "second.xhtml", "application/xhtml+xml"),
        ])
        assert build_manifest(opf_soup(opf))["dup"].href == "first.xhtml"

    def test_no_manifest(self):
        assert build_manifest(opf_soup("<package/>")) == {}


class TestResolveSpine:

    def _package(self, opf, opf_path="OEBPS/content.opf"):
        data = make_epub({opf_path: opf}, opf_path=opf_path)
        with open_archive(data) as archive:
            return load_package_document(archive, opf_path)

    def test_reading_order_and_paths(self):
        package = self._package(build_opf(
            items=[
                ("a", "Text/a.xhtml", "application/xhtml+xml"),
                ("b", "Text/b.xhtml", "application/xhtml+xml"),
            ],
            spine=["b", "a"],
        ))
        entries = resolve_spine(package)
        assert [e.item.id for e in entries] == ["b", "a"]
        assert [e.order for e in entries] == [0, 1]
        assert entries[0].path == "OEBPS/Text/b.xhtml"

    def test_skipped_entries_keep_original_index(self):
        package = self._package(build_opf(
            items=[
                ("a", "a.xhtml", "application/xhtml+xml"),
                ("c", "c.xhtml", "application/xhtml+xml"),
            ],
            spine=["a", "missing", None, "c"],
        ))
        entries = resolve_spine(package)
        assert [(e.item.id, e.order) for e in entries] == [("a", 0), ("c", 3)]

    def test_root_level_paths(self):
        package = self._package(
            build_opf(items=[("a", "a.xhtml", "application/xhtml+xml")], spine=["a"]),
            opf_path="content.opf",
        )
        assert resolve_spine(package)[0].path == "a.xhtml"

    def test_no_spine(self):
        package = self._package("<package><manifest/></package>")
        assert resolve_spine(package) == []
