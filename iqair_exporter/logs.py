"""Log formatting for the exporter.

Records carry their context as ``extra=`` fields; the formatters here render
those fields as logfmt or JSON so the call sites never build message strings.
"""
import json
import logging
import sys
from datetime import datetime, timezone

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

FORMATS = ("logfmt", "json")

# attributes every LogRecord has, anything else came in through extra=
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def record_fields(record):
    return {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}


def level_name(record):
    if record.levelno == logging.WARNING:
        return "warn"
    return record.levelname.lower()


def _logfmt_value(value):
    text = str(value)
    if text == "" or any(c in text for c in ' ="\n\t'):
        return json.dumps(text)
    return text


class LogfmtFormatter(logging.Formatter):

    def fields(self, record):
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        pairs = [
            ("ts", ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")),
            ("level", level_name(record)),
            ("caller", f"{record.module}:{record.lineno}"),
            ("msg", record.getMessage()),
        ]
        pairs.extend(record_fields(record).items())
        if record.exc_info:
            pairs.append(("exc", self.formatException(record.exc_info)))
        return pairs

    def format(self, record):
        return " ".join(f"{k}={_logfmt_value(v)}" for k, v in self.fields(record))


class JsonFormatter(LogfmtFormatter):

    def format(self, record):
        return json.dumps(dict(self.fields(record)), default=str)


def setup_logging(level="info", fmt="logfmt", stream=None):
    if level not in LEVELS:
        raise ValueError(f"unknown log level {level!r}")
    if fmt not in FORMATS:
        raise ValueError(f"unknown log format {fmt!r}")

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt == "json" else LogfmtFormatter())

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(LEVELS[level])

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return handler
