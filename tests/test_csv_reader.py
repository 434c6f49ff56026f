"""Tests for the delimited-file reader."""
import pytest

from csv_importer.exceptions import FileAccessError
from csv_importer.services.csv_reader import CSVReader


def test_has_content():
    """Blank records and all-empty fields carry no data."""
    assert CSVReader.has_content(["a", ""])
    assert CSVReader.has_content(["", " x "])
    assert not CSVReader.has_content([])
    assert not CSVReader.has_content(["", "", ""])
    assert not CSVReader.has_content(["  ", "\t"])


def test_count_records_skips_header_and_blanks(test_settings, write_text):
    """Header is dropped and blank lines are not counted."""
    path = write_text("sku,name\nA,1\n\nB,2\n,,\nC,3\n\n")
    reader = CSVReader(test_settings)

    assert reader.count_records(path, skip_header=True) == 3
    assert reader.count_records(path, skip_header=False) == 4


def test_count_records_drops_first_record_even_when_blank(test_settings, write_text):
    """skip_header discards the first record whatever it contains."""
    path = write_text("\nA,1\nB,2\n")
    reader = CSVReader(test_settings)

    assert reader.count_records(path, skip_header=True) == 2


def test_count_records_empty_file(test_settings, write_text):
    path = write_text("")
    assert CSVReader(test_settings).count_records(path) == 0


def test_custom_delimiter_and_enclosure(test_settings, write_text):
    """Fields are split on the configured delimiter and unquoted with the enclosure."""
    path = write_text("a;b\n'x;y';z\n")
    reader = CSVReader(test_settings)

    with reader.open(path) as handle:
        records = reader.configure(handle, delimiter=";", enclosure="'")
        assert reader.next_record(records) == ["a", "b"]
        assert reader.next_record(records) == ["x;y", "z"]
        assert reader.next_record(records) is None


def test_escape_character(test_settings, write_text):
    path = write_text('"say \\"hi\\"",2\n')
    reader = CSVReader(test_settings)

    with reader.open(path) as handle:
        records = reader.configure(handle, escape="\\")
        assert reader.next_record(records) == ['say "hi"', "2"]


def test_byte_order_mark_is_stripped(test_settings, tmp_path):
    path = tmp_path / "bom.csv"
    path.write_bytes("\ufeffsku,name\nA,1\n".encode("utf-8"))
    reader = CSVReader(test_settings)

    with reader.open(str(path)) as handle:
        assert reader.next_record(reader.configure(handle)) == ["sku", "name"]


def test_open_missing_file_retries_then_raises(test_settings, tmp_path, monkeypatch):
    """Every attempt is made before FileAccessError is raised."""
    attempts = []
    real_open = open

    def counting_open(path, *args, **kwargs):
        attempts.append(path)
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr("csv_importer.services.csv_reader.open", counting_open, raising=False)
    reader = CSVReader(test_settings)
    missing = str(tmp_path / "missing.csv")

    with pytest.raises(FileAccessError) as exc_info:
        reader.open(missing)

    assert "CSV file not found" in str(exc_info.value)
    assert exc_info.value.filepath == missing
    assert attempts == [missing] * test_settings.FILE_OPEN_RETRY_ATTEMPTS
