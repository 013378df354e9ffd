import argparse
import logging
import platform

from iqair_exporter import __version__
from iqair_exporter.exporter import DEFAULT_TIMEOUT_S, IqairCollector
from iqair_exporter.logs import FORMATS, LEVELS, setup_logging
from iqair_exporter.server import build_registry, make_server, parse_listen_address

LISTEN_ADDRESS = ":9861"
METRICS_PATH = "/metrics"

logger = logging.getLogger(__name__)


def listen_address(value):
    try:
        parse_listen_address(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return value


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="iqair_exporter",
                                     description="Prometheus exporter for iqAir AirVisual air quality monitors")
    parser.add_argument("--web.listen-address", dest="listen_address", type=listen_address,
                        default=LISTEN_ADDRESS,
                        help=f"address to listen on for web interface and telemetry (default: {LISTEN_ADDRESS})")
    parser.add_argument("--web.telemetry-path", dest="metrics_path", default=METRICS_PATH,
                        help=f"path under which to expose metrics (default: {METRICS_PATH})")
    parser.add_argument("--iqair.scrape-uri", dest="scrape_uri",
                        help="URI on which to scrape iqAir")
    parser.add_argument("--iqair.timeout", dest="timeout", type=float, default=DEFAULT_TIMEOUT_S,
                        help=f"timeout in seconds for each scrape of iqAir (default: {DEFAULT_TIMEOUT_S:g})")
    parser.add_argument("--log.level", dest="log_level", choices=list(LEVELS), default="info",
                        help="only log messages with the given severity or above (default: info)")
    parser.add_argument("--log.format", dest="log_format", choices=FORMATS, default="logfmt",
                        help="output format of log messages (default: logfmt)")
    parser.add_argument("--version", action="version", version=f"iqair_exporter {__version__}")
    return parser.parse_args(argv)


def main(argv=None, registry=None):
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_format)

    logger.info("Starting iqair_exporter", extra={"version": __version__, "python": platform.python_version()})

    try:
        collector = IqairCollector(args.scrape_uri, timeout=args.timeout)
    except ValueError as e:
        logger.error("Error creating an exporter", extra={"err": str(e)})
        return 1

    registry = build_registry(collector, registry)

    try:
        server = make_server(args.listen_address, args.metrics_path, registry)
    except OSError as e:
        logger.error("Error starting HTTP server", extra={"err": str(e)})
        return 1

    logger.info("Listening on address", extra={"address": args.listen_address, "path": args.metrics_path})
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
