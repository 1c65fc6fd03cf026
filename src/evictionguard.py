#!/usr/bin/env python3
# src/evictionguard.py
"""
Pod Eviction Protection - Kubernetes Admission Webhook

Protects workloads during correlated node failures: watches node health,
denies pod deletions and updates while too many nodes went NotReady inside a
node pool's window, and lets an operator switch interception on or off.
"""

import json
import logging
import os
import signal
import ssl
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

import node_pools
from admission import AdmissionDecisionHandler, AdmissionDecodeError
from interception import InterceptionOverride
from node_monitor import NodeHealthTracker, NodeMonitorStartupError

# -----------------------------
# Environment variables
# -----------------------------
LOCAL_MODE = os.environ.get("LOCAL_MODE", "false").lower() in ("true", "1", "yes")
WEBHOOK_PORT = int(os.environ.get("WEBHOOK_PORT", 8080 if LOCAL_MODE else 8443))
CERT_DIR = os.environ.get("CERT_DIR", "/tmp/k8s-webhook-server/serving-certs")
CONFIG_MAP_DIR = os.environ.get(
    "CONFIG_MAP_DIR", "./config" if LOCAL_MODE else "/etc/webhook/config"
)
NODE_NOTREADY_THRESHOLD = int(os.environ.get("NODE_NOTREADY_THRESHOLD", 3))
NODE_NOTREADY_WINDOW = int(os.environ.get("NODE_NOTREADY_WINDOW", 300))  # seconds
INTERCEPT_ON_STARTUP = os.environ.get("INTERCEPT_ON_STARTUP", "false").lower() in (
    "true",
    "1",
    "yes",
)
AUDIT_EVENT_TIMEOUT = float(os.environ.get("AUDIT_EVENT_TIMEOUT", 5))
WATCH_TIMEOUT_SECONDS = int(os.environ.get("WATCH_TIMEOUT_SECONDS", 60))
SHUTDOWN_TIMEOUT = 5
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("pod-eviction-protection")


# -----------------------------
# Kubernetes Client Setup
# -----------------------------


def load_kube_client(local_mode: bool = LOCAL_MODE) -> client.CoreV1Api:
    """Load in-cluster credentials, or the local kubeconfig."""
    if local_mode:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")
        return client.CoreV1Api()

    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")
    return client.CoreV1Api()


def build_components(core_api: client.CoreV1Api) -> Tuple[NodeHealthTracker, InterceptionOverride, AdmissionDecisionHandler]:
    """Wire the policy, override, node monitor and admission handler together."""
    policy = node_pools.load_policy(CONFIG_MAP_DIR, NODE_NOTREADY_THRESHOLD, NODE_NOTREADY_WINDOW)
    for pool in node_pools.describe(policy):
        logger.info(f"Node pool {pool['name']}: threshold={pool['threshold']}, window={pool['windowSeconds']}s")

    override = InterceptionOverride(intercepting=INTERCEPT_ON_STARTUP)
    tracker = NodeHealthTracker(
        core_api, policy, override, watch_timeout_seconds=WATCH_TIMEOUT_SECONDS
    )
    admission = AdmissionDecisionHandler(
        tracker, override, core_api, audit_timeout=AUDIT_EVENT_TIMEOUT
    )
    return tracker, override, admission


# -----------------------------
# HTTP Server for Admission, Callbacks and Metrics
# -----------------------------


class WebhookHTTPServer(ThreadingHTTPServer):
    """Threaded HTTP server carrying the handles the routes need."""

    daemon_threads = True

    def __init__(self, server_address, admission: AdmissionDecisionHandler,
                 override: InterceptionOverride, tracker: Optional[NodeHealthTracker] = None):
        self.admission = admission
        self.override = override
        self.tracker = tracker
        super().__init__(server_address, WebhookHTTPHandler)


class WebhookHTTPHandler(BaseHTTPRequestHandler):
    """Serves the admission webhook, the operator callbacks and metrics."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/callback/status":
            intercepting, nodes = self.server.override.status()
            self._send_json(200, {
                "status": "success",
                "data": {"intercepting": intercepting, "notReadyNodes": nodes},
            })

        elif path == "/healthz":
            self._send_json(200, {"status": "ok"})

        elif path == "/readyz":
            tracker = self.server.tracker
            if tracker is None or tracker.has_synced():
                self._send_json(200, {"status": "ready"})
            else:
                self._send_json(503, {"status": "not_ready", "message": "Node cache not yet synced"})

        elif path == "/metrics":
            try:
                metrics_data = generate_latest()
                self.send_response(200)
                self.send_header("Content-Type", CONTENT_TYPE_LATEST)
                self.end_headers()
                self.wfile.write(metrics_data)
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._send_text(500, b"Error generating metrics")

        else:
            self._send_text(404, b"Not Found")

    def do_POST(self):
        path = urlparse(self.path).path

        if path == "/validate":
            self._handle_admission()

        elif path == "/callback/disable-interception":
            self.server.override.disable()
            self._send_json(200, {
                "status": "success",
                "message": "Interception disabled successfully",
            })

        elif path == "/callback/enable-interception":
            self.server.override.enable()
            self._send_json(200, {
                "status": "success",
                "message": "Interception enabled successfully",
            })

        else:
            self._send_text(404, b"Not Found")

    def _handle_admission(self):
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self._send_json(400, {"error": "invalid Content-Length"})
            return

        body = self.rfile.read(length) if length > 0 else b""
        try:
            result = self.server.admission.review(body)
        except AdmissionDecodeError as e:
            logger.error(f"Failed to decode admission review: {e}")
            self._send_json(400, {"error": str(e)})
            return
        self._send_json(200, result)

    def _send_json(self, code: int, payload: Dict[str, Any]):
        data = json.dumps(payload).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_text(self, code: int, data: bytes):
        self.send_response(code)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def create_server(port: int, admission: AdmissionDecisionHandler, override: InterceptionOverride,
                  tracker: Optional[NodeHealthTracker] = None,
                  cert_dir: Optional[str] = None) -> WebhookHTTPServer:
    """Bind the webhook server; serve TLS when a certificate directory is given."""
    server = WebhookHTTPServer(("0.0.0.0", port), admission, override, tracker)
    if cert_dir:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(
            os.path.join(cert_dir, "tls.crt"), os.path.join(cert_dir, "tls.key")
        )
        server.socket = context.wrap_socket(server.socket, server_side=True)
    return server


# -----------------------------
# Main
# -----------------------------

shutdown_event = threading.Event()


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    shutdown_event.set()


def main():
    """Start the node monitor, then serve until a termination signal arrives."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        core_api = load_kube_client()
    except ConfigException as e:
        logger.error(f"Failed to load Kubernetes configuration: {e}")
        sys.exit(1)

    tracker, override, admission = build_components(core_api)

    try:
        tracker.start()
    except NodeMonitorStartupError as e:
        logger.error(f"Failed to start node monitor: {e}")
        sys.exit(1)

    server = create_server(
        WEBHOOK_PORT, admission, override, tracker,
        cert_dir=None if LOCAL_MODE else CERT_DIR,
    )
    server_thread = threading.Thread(target=server.serve_forever, name="webhook-server", daemon=True)
    server_thread.start()
    logger.info(
        f"Starting webhook server on port {WEBHOOK_PORT} "
        f"({'HTTP, local mode' if LOCAL_MODE else 'HTTPS'}), interception enabled: {override.is_intercepting()}"
    )

    try:
        while not shutdown_event.wait(1):
            pass
    finally:
        logger.info("Shutting down server...")
        server.shutdown()
        server.server_close()
        server_thread.join(timeout=SHUTDOWN_TIMEOUT)
        tracker.stop(timeout=SHUTDOWN_TIMEOUT)
        logger.info("Server exiting")


if __name__ == "__main__":
    main()
