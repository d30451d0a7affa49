import socket
import threading
import time
import logging
from socketserver import ThreadingMixIn
from wsgiref.simple_server import make_server, WSGIServer

import psutil
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app

logger = logging.getLogger(__name__)


# Create a threaded WSGI server for the Prometheus metrics
class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the main application."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    """Metrics of guest calls and host callbacks, in a registry of its own."""
    def __init__(self, host="127.0.0.1", port=9090):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None
        self.process = psutil.Process()

        self.registry = CollectorRegistry()

        self.calls = Counter('wasm_calls_total', 'Export calls by outcome', ['status'], registry=self.registry)
        self.call_latency = Histogram('wasm_call_latency_seconds', 'Duration of export calls', registry=self.registry)
        self.callbacks = Counter('wasm_callbacks_total', 'Host callbacks by outcome', ['outcome'], registry=self.registry)
        self.callbacks_pending = Gauge('wasm_callbacks_pending', 'Callbacks awaiting a reply', registry=self.registry)
        self.threads = Gauge('system_threads', 'Threads of this process', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Memory usage percent of this process', registry=self.registry)

    def start_server(self, max_retries: int = 5, retry_delay: float = 2):
        """Starts the Prometheus HTTP server in a daemon thread."""
        app = make_wsgi_app(self.registry)

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98 and attempt < max_retries - 1:  # Address already in use
                    logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                    time.sleep(retry_delay)
                else:
                    logger.error(f"Failed to bind to port {self.port}: {e}")
                    raise

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def update(self):
        self.threads.set(self.process.num_threads())
        self.memory_usage.set(self.process.memory_percent())

    def record_call(self, status: str, latency: float):
        self.calls.labels(status=status).inc()
        self.call_latency.observe(latency)

    def callback_started(self):
        self.callbacks_pending.inc()

    def callback_finished(self, outcome: str):
        self.callbacks_pending.dec()
        self.callbacks.labels(outcome=outcome).inc()
