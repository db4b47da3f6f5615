"""
Unit tests - ArchivePackager.py
"""
import os

import pytest
import pyzipper

from ArchivePackager import ArchivePackager, TempFileRemover
from Jm2PdfErrors import PackagingError


@pytest.fixture
def source_pdf(tmp_path):
    sourcePath = tmp_path / "(366517) Example.pdf"
    sourcePath.write_bytes(b"%PDF-1.4\n" + b"page" * 500)
    return sourcePath


def test_encrypted_archive_requires_password(source_pdf):
    archivePath = ArchivePackager(str(source_pdf), "366517.pdf", "s3cret")
    try:
        with pyzipper.AESZipFile(archivePath) as archive:
            assert archive.namelist() == ["366517.pdf"]
            assert archive.getinfo("366517.pdf").flag_bits & 0x1

            with pytest.raises(RuntimeError):
                archive.read("366517.pdf")

            archive.setpassword(b"wrong")
            with pytest.raises(RuntimeError):
                archive.read("366517.pdf")

            archive.setpassword(b"s3cret")
            assert archive.read("366517.pdf") == source_pdf.read_bytes()
    finally:
        TempFileRemover(archivePath)


def test_plain_archive_without_password(source_pdf):
    archivePath = ArchivePackager(str(source_pdf), "(366517) Example.pdf")
    try:
        with pyzipper.ZipFile(archivePath) as archive:
            assert archive.namelist() == ["(366517) Example.pdf"]
            assert not archive.getinfo("(366517) Example.pdf").flag_bits & 0x1
            assert archive.read("(366517) Example.pdf") == source_pdf.read_bytes()
    finally:
        TempFileRemover(archivePath)


def test_archive_is_a_temporary_file(source_pdf):
    archivePath = ArchivePackager(str(source_pdf), "x.pdf", "pw")
    assert archivePath.endswith(".zip")
    assert os.path.dirname(archivePath) != str(source_pdf.parent)
    TempFileRemover(archivePath)
    assert not os.path.exists(archivePath)


def test_missing_source_raises_packaging_error(tmp_path, monkeypatch):
    monkeypatch.setattr("tempfile.tempdir", str(tmp_path))

    with pytest.raises(PackagingError):
        ArchivePackager(str(tmp_path / "missing.pdf"), "missing.pdf", "pw")

    # The partial archive is cleaned up
    assert list(tmp_path.glob("jm2pdf-*.zip")) == []


def test_temp_file_remover_tolerates_missing_file(tmp_path):
    TempFileRemover(str(tmp_path / "never-existed.zip"))
