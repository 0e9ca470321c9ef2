import pytest

from app.gradeai.modules.uploads.service import (
    IncomingFile,
    build_page_storage_key,
    remove_stored_pages,
    sanitize_filename,
    upload_display_name,
    validate_files,
)
from app.gradeai.storage import LocalStorage, StorageError

JPEG = b"\xff\xd8\xff\xe0" + b"0" * 100
PDF = b"%PDF-1.4\n" + b"0" * 100
MB = 1024 * 1024


def _file(name="seite.jpg", content_type="image/jpeg", data=JPEG):
    return IncomingFile(filename=name, content_type=content_type, data=data)


def test_sanitize_filename():
    assert sanitize_filename("Mathe Test (1).jpg") == "Mathe_Test__1_.jpg"
    assert sanitize_filename("Prüfung.png") == "Pr_fung.png"
    assert sanitize_filename("") == "page"


def test_upload_display_name():
    assert upload_display_name([_file("a.jpg")]) == "a.jpg"
    assert upload_display_name([_file("mathe.test.jpg"), _file("b.jpg"), _file("c.jpg")]) == "mathe_3_pages"


def test_build_page_storage_key():
    assert build_page_storage_key(42, 2, "Seite 2.jpg", 1700000000000) == "uploads/42/page_2_1700000000000-Seite_2.jpg"


def test_validate_files_ok():
    assert validate_files([_file(), _file("b.png", "image/png")], max_bytes=4 * MB, allow_pdf=False) is None
    assert validate_files([_file("t.pdf", "application/pdf", PDF)], max_bytes=4 * MB, allow_pdf=True) is None


def test_validate_files_problems():
    assert validate_files([], max_bytes=MB, allow_pdf=False) == "No files provided"

    big = [_file(data=b"0" * (3 * MB)), _file(data=b"0" * (2 * MB))]
    assert validate_files(big, max_bytes=4 * MB, allow_pdf=False) == (
        "Total file size (5.0MB) exceeds 4.0MB limit. Please compress the images."
    )

    pdf = [_file("t.pdf", "application/pdf", PDF)]
    assert validate_files(pdf, max_bytes=MB, allow_pdf=False).endswith("Please convert PDFs to images first.")

    fake_pdf = [_file("t.pdf", "application/pdf", JPEG)]
    assert validate_files(fake_pdf, max_bytes=MB, allow_pdf=True) == "File t.pdf is not a valid PDF."

    empty = [_file("leer.jpg", data=b"")]
    assert validate_files(empty, max_bytes=MB, allow_pdf=False) == "File leer.jpg is empty."


def test_local_storage_roundtrip_and_delete(tmp_path):
    storage = LocalStorage(root=tmp_path)
    storage.put_bytes("uploads/1/page_1_1-a.jpg", JPEG, content_type="image/jpeg")
    storage.put_bytes("uploads/1/page_2_1-b.jpg", JPEG, content_type="image/jpeg")

    assert storage.read_bytes("uploads/1/page_1_1-a.jpg") == JPEG
    assert storage.list_prefix("uploads/1/page_") == ["uploads/1/page_1_1-a.jpg", "uploads/1/page_2_1-b.jpg"]

    assert remove_stored_pages(storage, ["uploads/1/page_1_1-a.jpg", "uploads/1/missing.jpg"]) == 0
    assert not storage.exists("uploads/1/page_1_1-a.jpg")

    with pytest.raises(StorageError):
        storage.read_bytes("uploads/1/page_1_1-a.jpg")
    with pytest.raises(StorageError):
        storage.put_bytes("../escape.jpg", JPEG)


def test_remove_stored_pages_counts_failures():
    class BrokenStorage(LocalStorage):
        def delete(self, key):
            raise StorageError("bucket unavailable")

    assert remove_stored_pages(BrokenStorage(root="/nonexistent"), ["a", "b"]) == 2
