"""
Delimited-file reader with open retries and blank-row classification.
"""
import csv
import time
from typing import IO, Iterator, List, Optional, Sequence

from csv_importer.exceptions import FileAccessError
from csv_importer.settings import Settings, settings as default_settings
from csv_importer.app.logging_config import get_logger

logger = get_logger(__name__)


class CSVReader:
    """Reader for delimited text files."""

    def __init__(self, config: Optional[Settings] = None):
        """
        Initialize reader.

        Args:
            config: Settings supplying retry, buffering and encoding options
        """
        config = config or default_settings
        self.retry_attempts = max(1, config.FILE_OPEN_RETRY_ATTEMPTS)
        self.retry_delay = config.FILE_OPEN_RETRY_DELAY_SECONDS
        self.buffer_size = config.READ_BUFFER_SIZE
        self.encoding = config.FILE_ENCODING

    def open(self, filepath: str) -> IO[str]:
        """
        Open a file for reading, retrying transient failures.

        Args:
            filepath: Path to the delimited file

        Returns:
            Open text handle with an 8 KiB (configurable) read buffer

        Raises:
            FileAccessError: If every attempt failed
        """
        last_error: Optional[OSError] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                return open(
                    filepath,
                    "r",
                    buffering=self.buffer_size,
                    encoding=self.encoding,
                    newline="",
                )
            except OSError as e:
                last_error = e
                logger.warning(
                    "Failed to open file",
                    extra={
                        "filepath": filepath,
                        "attempt": attempt,
                        "max_attempts": self.retry_attempts,
                        "error": str(e)
                    }
                )
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_delay)

        if isinstance(last_error, FileNotFoundError):
            reason = "CSV file not found"
        elif isinstance(last_error, PermissionError):
            reason = "CSV file is not readable"
        else:
            reason = "CSV file could not be opened"
        raise FileAccessError(f"{reason}: {filepath}", filepath=filepath) from last_error

    @staticmethod
    def configure(
        handle: IO[str],
        delimiter: str = ",",
        enclosure: str = '"',
        escape: Optional[str] = None
    ) -> Iterator[List[str]]:
        """
        Build a record iterator over an open handle.

        Args:
            handle: Handle returned by open()
            delimiter: Field separator
            enclosure: Quote character
            escape: Escape character, or None to rely on doubled quotes

        Returns:
            Iterator yielding each record as a list of field strings
        """
        return csv.reader(
            handle,
            delimiter=delimiter,
            quotechar=enclosure,
            escapechar=escape or None,
            doublequote=True,
        )

    @staticmethod
    def next_record(records: Iterator[List[str]]) -> Optional[List[str]]:
        """Return the next record, or None at end of file."""
        return next(records, None)

    @staticmethod
    def has_content(row: Sequence[str]) -> bool:
        """
        Check whether a record carries any data.

        A blank line parses as an empty record and a line of bare delimiters
        as a record of empty fields; neither counts as a row.
        """
        return any(field and field.strip() for field in row)

    def count_records(
        self,
        filepath: str,
        skip_header: bool = True,
        delimiter: str = ",",
        enclosure: str = '"',
        escape: Optional[str] = None
    ) -> int:
        """
        Count content-bearing records with a full pass over the file.

        The header is dropped the same way the processing pass drops it, so
        the result equals the number of rows the handler will see.

        Args:
            filepath: Path to the delimited file
            skip_header: Discard the first record
            delimiter: Field separator
            enclosure: Quote character
            escape: Escape character

        Returns:
            Number of content-bearing records
        """
        with self.open(filepath) as handle:
            records = self.configure(handle, delimiter, enclosure, escape)
            if skip_header:
                self.next_record(records)
            total = sum(1 for row in records if self.has_content(row))

        logger.debug(
            "Counted records",
            extra={"filepath": filepath, "total_data": total, "skip_header": skip_header}
        )

        return total
