"""
CSV export of reconstructed history events.
"""

import asyncio
import csv
import os
import secrets
import string
from typing import List, Sequence

from shared.errors import ReportIOError
from shared.logging import get_logger

from ..models import HistoryEvent

FILE_ID_LENGTH = 10
FILE_ID_ALPHABET = string.ascii_lowercase + string.digits
MAX_NAME_ATTEMPTS = 5
DELIMITER = ";"


class ReportExporter:
    """Writes events as ``user_id;segment_slug;operation;timestamp`` lines.

    Each report goes to a fresh file under ``storage_dir``; the returned URL
    is where the HTTP layer serves it from.
    """

    def __init__(
        self,
        storage_dir: str,
        public_base_url: str,
        file_prefix: str = "report_",
        file_ext: str = ".csv",
    ):
        self.storage_dir = storage_dir
        self.public_base_url = public_base_url.rstrip("/")
        self.file_prefix = file_prefix
        self.file_ext = file_ext
        self.logger = get_logger("segments.exporter")

    def _random_file_name(self) -> str:
        file_id = "".join(secrets.choice(FILE_ID_ALPHABET) for _ in range(FILE_ID_LENGTH))
        return f"{self.file_prefix}{file_id}{self.file_ext}"

    def _write(self, rows: List[List[str]]) -> str:
        try:
            os.makedirs(self.storage_dir, exist_ok=True)
        except OSError as e:
            self.logger.error("Failed to create report directory", path=self.storage_dir, error=str(e))
            raise ReportIOError("cannot create report directory", details={"path": self.storage_dir}) from e

        for _ in range(MAX_NAME_ATTEMPTS):
            file_name = self._random_file_name()
            path = os.path.join(self.storage_dir, file_name)
            try:
                with open(path, "x", newline="", encoding="utf-8") as report:
                    writer = csv.writer(report, delimiter=DELIMITER, lineterminator="\n")
                    writer.writerows(rows)
                return file_name
            except FileExistsError:
                continue
            except OSError as e:
                self.logger.error("Failed to write report", path=path, error=str(e))
                raise ReportIOError("cannot write report file", details={"path": path}) from e

        raise ReportIOError(
            "cannot pick an unused report file name",
            details={"path": self.storage_dir, "attempts": MAX_NAME_ATTEMPTS}
        )

    async def export(self, events: Sequence[HistoryEvent]) -> str:
        """Write the events and return the URL of the report."""
        rows = [event.as_row() for event in events]
        file_name = await asyncio.to_thread(self._write, rows)
        url = f"{self.public_base_url}/reports/{file_name}"

        self.logger.info("Report exported", file_name=file_name, events=len(rows))
        return url
