import platform
import socket
from http.server import ThreadingHTTPServer
from urllib.parse import urlparse

from prometheus_client import REGISTRY, Info, MetricsHandler

from iqair_exporter import __version__

LANDING_PAGE = """<html>
<head><title>iqAir Exporter</title></head>
<body>
<h1>iqAir Exporter</h1>
<p><a href='{path}'>Metrics</a></p>
</body>
</html>
"""


def parse_listen_address(value):
    """Split "[host]:port" into (host, port). IPv6 hosts go in brackets."""
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {value!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in address {value!r}")
    return host, port


class ExporterHandler(MetricsHandler):
    metrics_path = "/metrics"

    def do_GET(self):
        if urlparse(self.path).path == self.metrics_path:
            return super().do_GET()

        page = LANDING_PAGE.format(path=self.metrics_path).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(page)))
        self.end_headers()
        self.wfile.write(page)

    @classmethod
    def factory(cls, registry, metrics_path="/metrics"):
        return type(cls.__name__, (cls, object), {"registry": registry, "metrics_path": metrics_path})


class ExporterServer(ThreadingHTTPServer):
    daemon_threads = True


class ExporterServerV6(ExporterServer):
    address_family = socket.AF_INET6


def make_server(address, metrics_path, registry):
    host, port = parse_listen_address(address)
    server_cls = ExporterServerV6 if ":" in host else ExporterServer
    return server_cls((host, port), ExporterHandler.factory(registry, metrics_path))


def build_registry(collector, registry=None):
    if registry is None:
        registry = REGISTRY
    registry.register(collector)
    build = Info("iqair_exporter_build", "A metric with a constant '1' value labeled by version and "
                 "pythonversion from which iqair_exporter was built.", registry=registry)
    build.info({"version": __version__, "pythonversion": platform.python_version()})
    return registry
