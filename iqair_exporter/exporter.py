"""Prometheus collector for iqAir AirVisual air quality monitors.

Tested with the iqAir AirVisual Pro, which serves its current readings as
JSON over HTTP on the local network.
"""
import json
import logging
import math
import threading
import time
from collections import namedtuple

import requests
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

logger = logging.getLogger(__name__)

NAMESPACE = "iqair"
DEFAULT_TIMEOUT_S = 10.0

# reads return as soon as any byte is available, so the deadline is checked
# between bytes of a slowly sent body
READ_CHUNK_SIZE = 1

INT_MIN = -(2 ** 63)
INT_MAX = 2 ** 63 - 1

GAUGE = "gauge"
COUNTER = "counter"

Desc = namedtuple("Desc", ["name", "documentation", "kind"])

Reading = namedtuple("Reading", ["co2", "p25", "p10", "temperature", "humidity"])

EMPTY_READING = Reading(co2=0, p25=0, p10=0, temperature=0.0, humidity=0)

# reading field -> key under "current" in the device response
ENVELOPE_KEYS = {
    "co2": "co",
    "p25": "p2",
    "p10": "p1",
    "temperature": "tp",
    "humidity": "hm",
}


class ScrapeError(Exception):
    pass


class TransportFailure(ScrapeError):
    pass


class DecodeFailure(ScrapeError):
    pass


def fq_name(*parts):
    return "_".join([NAMESPACE] + [p for p in parts if p])


def _reject_constant(name):
    raise ValueError(f"invalid JSON number {name}")


def _matches(obj, key):
    # keys match case-insensitively, later keys win
    return [v for k, v in obj.items() if k.lower() == key and v is not None]


def _int_field(current, key):
    value = 0
    for v in _matches(current, key):
        if isinstance(v, bool) or not isinstance(v, int):
            raise DecodeFailure(f"cannot decode {v!r} into integer field {key!r}")
        if not INT_MIN <= v <= INT_MAX:
            raise DecodeFailure(f"value {v} overflows integer field {key!r}")
        value = v
    return value


def _float_field(current, key):
    value = 0.0
    for v in _matches(current, key):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise DecodeFailure(f"cannot decode {v!r} into number field {key!r}")
        v = float(v)
        if not math.isfinite(v):
            raise DecodeFailure(f"value overflows number field {key!r}")
        value = v
    return value


def decode_reading(body):
    """Decode a device response body into a Reading.

    Missing or null fields decode to zero and unknown fields are ignored.
    Invalid UTF-8 is replaced rather than rejected. Anything that is not
    valid JSON, or has the wrong type where the envelope expects an object
    or a number, raises DecodeFailure.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(body, parse_constant=_reject_constant)
    except ValueError as e:
        raise DecodeFailure(str(e)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DecodeFailure(f"expected a JSON object, got {type(data).__name__}")

    current = {}
    for value in _matches(data, "current"):
        if not isinstance(value, dict):
            raise DecodeFailure(f"expected an object under 'current', got {type(value).__name__}")
        current.update(value)

    return Reading(
        co2=_int_field(current, ENVELOPE_KEYS["co2"]),
        p25=_int_field(current, ENVELOPE_KEYS["p25"]),
        p10=_int_field(current, ENVELOPE_KEYS["p10"]),
        temperature=_float_field(current, ENVELOPE_KEYS["temperature"]),
        humidity=_int_field(current, ENVELOPE_KEYS["humidity"]),
    )


class IqairCollector(object):
    """Collects iqAir readings from the given URI on every collect().

    Register it with a prometheus_client CollectorRegistry. Each collect()
    does exactly one GET against the device; concurrent collects are
    serialized so they queue instead of racing.
    """

    def __init__(self, uri, timeout=DEFAULT_TIMEOUT_S):
        if not uri:
            raise ValueError("iqAir scrape URI is required")
        if timeout is None or timeout <= 0:
            raise ValueError(f"scrape timeout must be positive, got {timeout}")

        self._uri = uri
        self.timeout = timeout
        self.lock = threading.Lock()  # held for the whole scrape and publish

        self.total_scrapes = 0
        self.json_parse_failures = 0

        self.up_desc = Desc(fq_name("up"), "Was the last scrape of iqAir successful.", GAUGE)
        self.scrapes_desc = Desc(fq_name("exporter", "scrapes_total"), "Current total iqAir scrapes.", COUNTER)
        self.parse_failures_desc = Desc(
            fq_name("exporter", "json_parse_failures_total"), "Number of errors while parsing JSON.", COUNTER)
        self.reading_descs = {
            "co2": Desc(fq_name("co2"), "CO2 reading.", GAUGE),
            "p25": Desc(fq_name("p25"), "p2.5 particulate reading.", GAUGE),
            "p10": Desc(fq_name("p10"), "p10 particulate reading.", GAUGE),
            "temperature": Desc(fq_name("temperature"), "Temperature reading in Celsius.", GAUGE),
            "humidity": Desc(fq_name("humidity"), "Humidity reading.", GAUGE),
        }

    @property
    def uri(self):
        return self._uri

    def descs(self):
        return [self.up_desc, self.scrapes_desc, self.parse_failures_desc] + list(self.reading_descs.values())

    def describe(self):
        return [self._family(desc) for desc in self.descs()]

    def collect(self):
        with self.lock:
            up, reading = self.scrape()
            if reading is None:
                reading = EMPTY_READING

            metrics = [
                self._family(self.scrapes_desc, self.total_scrapes),
                self._family(self.parse_failures_desc, self.json_parse_failures),
                self._family(self.up_desc, up),
            ]
            for field, desc in self.reading_descs.items():
                metrics.append(self._family(desc, float(getattr(reading, field))))
            return metrics

    def scrape(self):
        """Fetch and decode one reading. Returns (up, reading or None)."""
        self.total_scrapes += 1

        try:
            body = self.fetch()
        except TransportFailure as e:
            logger.error("Failed to scrape", extra={"event": "scrape_failed", "uri": self.uri, "err": str(e)})
            return 0.0, None

        try:
            reading = decode_reading(body)
        except DecodeFailure as e:
            self.json_parse_failures += 1
            logger.error("Failed to parse body", extra={"event": "parse_failed", "uri": self.uri, "err": str(e)})
            return 0.0, None

        logger.debug("Scraped reading", extra=dict(reading._asdict(), event="scraped", uri=self.uri))
        return 1.0, reading

    def fetch(self):
        """GET the device and read the body, all within self.timeout."""
        deadline = time.monotonic() + self.timeout
        try:
            resp = requests.get(self.uri, timeout=self.timeout, stream=True)
            try:
                resp.raise_for_status()
                chunks = []
                for chunk in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
                    if time.monotonic() > deadline:
                        raise TransportFailure(f"reading {self.uri} took longer than {self.timeout}s")
                    chunks.append(chunk)
                return b"".join(chunks)
            finally:
                resp.close()
        except requests.RequestException as e:
            raise TransportFailure(e) from e

    @staticmethod
    def _family(desc, value=None):
        if desc.kind == COUNTER:
            return CounterMetricFamily(desc.name, desc.documentation, value=value)
        return GaugeMetricFamily(desc.name, desc.documentation, value=value)
