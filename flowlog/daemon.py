"""flowlog daemon: HTTP API plus recording controller in one process.

This module provides the long-running entry point. It loads configuration,
sets up logging, builds the RecordingController, applies the stored
provider settings and serves the Flask API until a termination signal
arrives.

Features:
- Recovery of sessions left active by a crashed run
- Optional recording from startup (--record)
- Graceful signal handling (SIGTERM, SIGINT): an active session is stopped
  and its remaining frames analyzed before exit

Example:
    Run directly::

        python -m flowlog.daemon --record

    Or programmatically::

        >>> from flowlog.daemon import FlowlogDaemon
        >>> daemon = FlowlogDaemon(record=True)
        >>> daemon.run()  # Blocks until interrupted
"""

import argparse
import logging
import signal
import threading
import time
from typing import Optional

from .config import ConfigManager
from .controller import RecordingController
from .logging_utils import LOG_FILENAME, setup_logging

logger = logging.getLogger(__name__)


class FlowlogDaemon:
    """Owns the controller and the web server thread.

    Attributes:
        config_manager: Loaded ConfigManager
        controller: RecordingController serving the API
        running: Cleared by the signal handler to end ``run``
    """

    def __init__(self, config_path: Optional[str] = None, port: Optional[int] = None,
                 record: bool = False, enable_web: bool = True):
        """Initialize the daemon.

        Args:
            config_path: YAML config file, or None for the default location
            port: Web server port overriding ``web.port``
            record: Start a recording session as soon as the daemon runs
            enable_web: Serve the HTTP API

        Signal handlers are registered for:
        - SIGTERM: Graceful shutdown (systemd stop)
        - SIGINT: Interrupt signal (Ctrl+C)
        """
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.config

        log_file = config.storage.root / LOG_FILENAME if config.logging.log_to_file else None
        setup_logging(config.logging.level, log_file)

        self.running = True
        self.record = record
        self.enable_web = enable_web
        self.host = config.web.host
        self.port = port or config.web.port
        self.controller = RecordingController(config)
        self.flask_app = None
        self.web_thread: Optional[threading.Thread] = None

        if enable_web:
            from web.app import create_app
            self.flask_app = create_app(self.controller, self.config_manager)

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle termination signals by ending the main loop."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def _start_web_server(self):
        logger.info(f"Starting web server on http://{self.host}:{self.port}")
        self.flask_app.run(host=self.host, port=self.port, debug=False, use_reloader=False)

    def run(self):
        """Run until a termination signal arrives.

        Note:
            This method blocks. The Flask server runs on a daemon thread and
            ends with the process.
        """
        logger.info("flowlog daemon starting...")

        recovered = self.controller.recover_interrupted()
        if recovered:
            logger.info(f"Closed {len(recovered)} interrupted sessions")

        self.controller.load_settings()

        if self.record:
            result = self.controller.start_session()
            if not result["success"]:
                logger.error(f"Could not start recording: {result['message']}")

        if self.enable_web:
            self.web_thread = threading.Thread(target=self._start_web_server, daemon=True)
            self.web_thread.start()

        while self.running:
            time.sleep(1)

        logger.info("Shutting down...")
        self.controller.shutdown()
        logger.info("flowlog daemon stopped")


def main(argv=None):
    parser = argparse.ArgumentParser(description="flowlog recording daemon")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--port", type=int, help="Web server port (default from config)")
    parser.add_argument("--record", action="store_true", help="Start recording immediately")
    args = parser.parse_args(argv)

    daemon = FlowlogDaemon(config_path=args.config, port=args.port, record=args.record)
    daemon.run()


if __name__ == "__main__":
    main()
