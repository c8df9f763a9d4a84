"""
Reply audit logging service.
Appends every generated reply to a CSV file.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional
import aiofiles

logger = logging.getLogger(__name__)


class ResponseAuditLog:
    """
    Write-only CSV sink for bot replies.
    The header is written once, when the file does not exist yet.
    """

    # CSV column headers
    HEADERS = [
        "timestamp",
        "user",
        "user_message",
        "bot_response",
        "delivered",
    ]

    def __init__(self, csv_path: str = "logs/responses.csv"):
        """
        Initialize the audit log.

        Args:
            csv_path: File that receives the rows
        """
        self.csv_path = Path(csv_path)

    async def log_reply(
        self,
        user: str,
        user_message: str,
        bot_response: str,
        delivered: bool,
    ) -> bool:
        """
        Append one reply attempt.

        Args:
            user: Handle of the user who triggered the reply
            user_message: Original chat text
            bot_response: Generated reply
            delivered: Whether the reply reached the chat

        Returns:
            True if the row was written
        """
        row = [
            datetime.now().isoformat(),
            self._escape_csv(user),
            self._escape_csv(user_message),
            self._escape_csv(bot_response),
            "true" if delivered else "false",
        ]

        try:
            self.csv_path.parent.mkdir(parents=True, exist_ok=True)
            needs_header = not self.csv_path.exists()
            async with aiofiles.open(self.csv_path, mode="a", newline="", encoding="utf-8") as f:
                if needs_header:
                    await f.write(",".join(self.HEADERS) + "\n")
                await f.write(",".join(row) + "\n")
        except OSError as e:
            logger.error(f"Error saving reply to CSV: {e}")
            return False

        logger.debug(f"Logged reply to {user}")
        return True

    def _escape_csv(self, value: Optional[str]) -> str:
        """
        Escape a value for CSV format.
        Wraps in quotes if contains comma, quote, or newline.
        """
        if not value:
            return ""

        needs_escaping = any(c in value for c in [",", '"', "\n", "\r"])

        if needs_escaping:
            escaped = value.replace('"', '""')
            return f'"{escaped}"'

        return value

    async def get_recent_entries(self, limit: int = 10) -> list:
        """
        Get recent log entries.

        Args:
            limit: Maximum entries to return

        Returns:
            List of dictionaries with entry data
        """
        if not self.csv_path.exists():
            return []

        try:
            async with aiofiles.open(self.csv_path, mode="r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            logger.error(f"Error reading reply log: {e}")
            return []

        records = self._split_records(content)[1:]  # skip header
        entries = []
        for record in records[-limit:] if limit > 0 else []:
            parts = self._parse_csv_line(record)
            if len(parts) >= len(self.HEADERS):
                entry = {self.HEADERS[i]: parts[i] for i in range(len(self.HEADERS))}
                entry["delivered"] = entry["delivered"] == "true"
                entries.append(entry)

        return entries

    @staticmethod
    def _split_records(content: str) -> list:
        """Split file content into records, keeping newlines inside quotes."""
        records = []
        current = ""
        in_quotes = False
        for char in content:
            if char == '"':
                in_quotes = not in_quotes
            if char == "\n" and not in_quotes:
                if current.strip():
                    records.append(current.rstrip("\r"))
                current = ""
                continue
            current += char
        if current.strip():
            records.append(current)
        return records

    def _parse_csv_line(self, line: str) -> list:
        """
        Parse a CSV line, handling quoted values.

        Args:
            line: CSV line string

        Returns:
            List of field values
        """
        result = []
        current = ""
        in_quotes = False

        i = 0
        while i < len(line):
            char = line[i]

            if char == '"':
                if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                    # Escaped quote
                    current += '"'
                    i += 1
                else:
                    in_quotes = not in_quotes
            elif char == "," and not in_quotes:
                result.append(current)
                current = ""
            else:
                current += char

            i += 1

        result.append(current)

        return result
