"""
Structured logging with key=value and JSON output support.

Wraps the standard library ``logging`` module. Keyword arguments passed to
a [Logger][relayhub.core.logger.Logger] call are rendered as key=value
pairs (default) or as fields of a JSON object. Loggers can be
[bound][relayhub.core.logger.Logger.bind] to a fixed context, which the
pool uses to tag every line about a relay with ``relay=<url>``.

The [StructuredFormatter][relayhub.core.logger.StructuredFormatter] reads
the structured fields from the ``structured_kv`` record attribute. Once
installed on the root handler it also formats the plain
``logging.getLogger()`` calls made by the models and utils layers.

Examples:
    ```python
    logger = Logger("pool")
    logger.info("relay_connected", relay="wss://relay.damus.io", connected=3)
    # Output: relay_connected relay=wss://relay.damus.io connected=3

    relay_logger = logger.bind(relay="wss://nos.lol")
    relay_logger.warning("relay_error", error="timeout")
    # Output: relay_error relay=wss://nos.lol error=timeout
    ```
"""

from __future__ import annotations

import datetime
import json
import logging
from typing import Any, ClassVar


def _truncate(value: Any, max_value_length: int | None) -> str:
    s = str(value)
    if max_value_length and len(s) > max_value_length:
        return s[:max_value_length] + f"...<truncated {len(s) - max_value_length} chars>"
    return s


def format_kv_pairs(
    kwargs: dict[str, Any],
    max_value_length: int | None = 1000,
    prefix: str = " ",
) -> str:
    """Format a dictionary as space-separated key=value pairs.

    Values longer than *max_value_length* are truncated. Empty values and
    values containing whitespace, ``=`` or quotes are escaped and wrapped
    in double quotes.

    Args:
        kwargs: Key-value pairs to format.
        max_value_length: Maximum characters per value, or ``None`` for no limit.
        prefix: String prepended to a non-empty result.

    Returns:
        Formatted string such as ``' relay=wss://a.com reason="rate limited"'``,
        or an empty string when *kwargs* is empty.
    """
    if not kwargs:
        return ""

    parts = []
    for k, v in kwargs.items():
        s = _truncate(v, max_value_length)
        if not s or any(c in s for c in " =\"'\t\n"):
            escaped = s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            parts.append(f'{k}="{escaped}"')
        else:
            parts.append(f"{k}={s}")
    return prefix + " ".join(parts)


class StructuredFormatter(logging.Formatter):
    """Formats every log record as ``level name message key=value...``.

    Args:
        include_timestamp: Prefix each line with an ISO 8601 UTC timestamp.
    """

    def __init__(self, *, include_timestamp: bool = False) -> None:
        super().__init__()
        self._include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        base = f"{record.levelname.lower()} {record.name} {record.getMessage()}"
        extra: dict[str, Any] = getattr(record, "structured_kv", {})
        if extra:
            base += format_kv_pairs(extra)
        if record.exc_info:
            base += "\n" + self.formatException(record.exc_info)
        if self._include_timestamp:
            ts = datetime.datetime.fromtimestamp(record.created, datetime.UTC).isoformat()
            base = f"{ts} {base}"
        return base


class Logger:
    """Structured logger that appends keyword arguments as fields.

    Mirrors the standard logging API (``debug`` to ``critical`` plus
    ``exception``) with an extra ``**kwargs`` parameter.

    Args:
        name: Name passed to ``logging.getLogger``.
        json_output: Emit JSON objects instead of key=value pairs.
        max_value_length: Truncation limit per value. Defaults to 1000.
        context: Fields attached to every record of this logger.
    """

    _DEFAULT_MAX_VALUE_LENGTH: ClassVar[int] = 1000

    def __init__(
        self,
        name: str,
        *,
        json_output: bool = False,
        max_value_length: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        if max_value_length is None:
            max_value_length = self._DEFAULT_MAX_VALUE_LENGTH
        self._logger = logging.getLogger(name)
        self._json_output = json_output
        self._max_value_length = max_value_length
        self._context: dict[str, Any] = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **context: Any) -> Logger:
        """Return a child logger that adds *context* to every record.

        The child shares the underlying ``logging.Logger``; its context is
        merged over the parent's.
        """
        return Logger(
            self._logger.name,
            json_output=self._json_output,
            max_value_length=self._max_value_length,
            context={**self._context, **context},
        )

    def _log(self, level: int, msg: str, kwargs: dict[str, Any], *, exc_info: bool = False) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields = {**self._context, **kwargs}
        if self._json_output:
            record = {
                "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "logger": self._logger.name,
                "message": msg,
                **fields,
            }
            self._logger.log(level, json.dumps(record, default=str), exc_info=exc_info)
            return
        extra = (
            {"structured_kv": {k: _truncate(v, self._max_value_length) for k, v in fields.items()}}
            if fields
            else {}
        )
        self._logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, kwargs)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.CRITICAL, msg, kwargs)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log at ERROR level with the current exception's traceback."""
        self._log(logging.ERROR, msg, kwargs, exc_info=True)
