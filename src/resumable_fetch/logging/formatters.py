"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlsplit, urlunsplit

from resumable_fetch.logging.context import get_log_context


def sanitize_url(url: str) -> str:
    """Strip query string and fragment, which may carry signed tokens."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Sanitizes URLs to remove sensitive tokens before logging.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        "url",
        "current_url",
        "redirect_url",
        "temp_path",
        "final_path",
        "state",
        "previous_state",
        "status",
        "http_status",
        "retry_count",
        "max_retries",
        "bytes_written",
        "range_offset",
        "error_kind",
        "error_category",
        "error_message",
        "duration_ms",
    ]

    # Fields that contain URLs and should be sanitized
    URL_FIELDS = ["url", "current_url", "redirect_url"]

    def _sanitize_value(self, key: str, value: Any) -> Any:
        if key in self.URL_FIELDS and isinstance(value, str):
            return sanitize_url(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with sanitized URLs."""
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        ctx = get_log_context()
        if ctx["session_url"]:
            log_entry["session_url"] = sanitize_url(ctx["session_url"])

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = self._sanitize_value(field, value)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Falls back to the request URL from the log context when a record
    carries no url field.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]

        prefix = " - ".join(parts)
        message = record.getMessage()

        url = getattr(record, "url", None) or ctx["session_url"]
        if url:
            message = f"{message} ({sanitize_url(url)})"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"{prefix} - {message}"
