import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

GOOD_BODY = b'{"current":{"co":410,"p2":5,"p1":12,"tp":21.5,"hm":40}}'


class FakeDevice(object):
    """Stands in for an AirVisual unit on 127.0.0.1.

    Every request's (start, end) service window is recorded; end is taken
    before the response is written so a client can never see a response
    before its window is closed.
    """

    def __init__(self):
        self.body = GOOD_BODY
        self.status = 200
        self.delay = 0
        self.trickle = 0  # seconds between body bytes
        self.windows = []
        self.lock = threading.Lock()

        device = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                start = time.monotonic()
                if device.delay:
                    time.sleep(device.delay)
                with device.lock:
                    device.windows.append((start, time.monotonic()))
                self.send_response(device.status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(device.body)))
                self.end_headers()
                if not device.trickle:
                    self.wfile.write(device.body)
                    return
                try:
                    for i in range(len(device.body)):
                        self.wfile.write(device.body[i:i + 1])
                        self.wfile.flush()
                        time.sleep(device.trickle)
                except ConnectionError:
                    pass

            def log_message(self, *args):
                pass

        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.httpd.daemon_threads = True
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    @property
    def url(self):
        return "http://127.0.0.1:{}/".format(self.httpd.server_address[1])

    def start(self):
        self.thread.start()

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()


@pytest.fixture
def device():
    d = FakeDevice()
    d.start()
    yield d
    d.stop()


@pytest.fixture
def dead_url():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}/"


def samples(metrics):
    return {s.name: s.value for m in metrics for s in m.samples}
