"""
Main application entry point for the WhatsApp dispatch worker.

Exposes the dispatch pass as an HTTP invocation endpoint, runs it on a
schedule in daemon mode, and handles startup, health checks and graceful
shutdown.
"""

import os
import sys
import json
import logging
import time
import uuid
import signal
import threading
from datetime import datetime, timezone
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Optional, Dict, Any, Tuple
from urllib.parse import urlparse

from whatsapp_worker.app_factory import create_app, ApplicationContainer
from whatsapp_worker.utils.logger import get_log_stats, get_performance_logger
from whatsapp_worker.utils.error_handler import GlobalErrorHandler, ErrorSeverity, monitor_performance


logger = logging.getLogger(__name__)


CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}


def execute_dispatch(dispatcher, error_handler: Optional[GlobalErrorHandler] = None) -> Tuple[int, Dict[str, Any]]:
    """
    Run one dispatch pass and shape the invocation response.

    Args:
        dispatcher: NotificationDispatcher to run
        error_handler: Receives crash reports and the pass timing

    Returns:
        Tuple of HTTP status code and JSON body. 200 with the pass summary,
        or 500 with ``{success, error, timestamp}`` when the gateway check or
        the queue fetch raised.
    """
    start_time = time.perf_counter()

    try:
        summary = dispatcher.run()
    except Exception as e:
        logger.error(f"Error in process-whatsapp-notifications: {e}", exc_info=True)
        if error_handler:
            error_handler.report_error(e, "dispatcher", ErrorSeverity.HIGH, {"operation": "dispatch_pass"})
            error_handler.record_performance(
                "dispatcher", "dispatch_pass", time.perf_counter() - start_time,
                success=False, error_message=str(e)
            )
        return 500, {
            'success': False,
            'error': str(e),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    result = summary.to_dict()

    if error_handler:
        error_handler.record_performance(
            "dispatcher", "dispatch_pass", time.perf_counter() - start_time,
            success=True,
            metadata={k: v for k, v in result.items() if k != 'message'}
        )

    return 200, result


def dispatch_failure(outcome: Tuple[int, Dict[str, Any]]) -> Optional[str]:
    """Error message of a pass that crashed, None for any pass that completed."""
    status_code, body = outcome
    if status_code >= 500:
        return body.get('error') or f"HTTP {status_code}"
    return None


class DispatchRequestHandler(BaseHTTPRequestHandler):
    """HTTP front of the worker. ``self.server.app`` is the running application."""

    def do_OPTIONS(self):
        self._send_text(200, "ok")

    def do_GET(self):
        path = urlparse(self.path).path
        app = self.server.app
        server_config = app.settings.server

        if path == server_config.invoke_path:
            self._send_json(*app.handle_invocation())

        elif path == server_config.health_path:
            health = app.health_check()
            self._send_json(200 if health['healthy'] else 503, health)

        elif path == server_config.gateway_status_path:
            self._send_json(200, app.gateway_status())

        else:
            self._send_json(404, {'success': False, 'error': 'Not found'})

    def do_POST(self):
        path = urlparse(self.path).path

        # The invocation body carries nothing the pass needs
        length = int(self.headers.get('Content-Length') or 0)
        if length:
            self.rfile.read(length)

        if path == self.server.app.settings.server.invoke_path:
            self._send_json(*self.server.app.handle_invocation())
        else:
            self._send_json(404, {'success': False, 'error': 'Not found'})

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    def _send_json(self, status_code: int, body: Dict[str, Any]):
        payload = json.dumps(body, default=str).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(payload)))
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(payload)

    def _send_text(self, status_code: int, body: str):
        payload = body.encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'text/plain')
        self.send_header('Content-Length', str(len(payload)))
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(payload)

    def _send_cors_headers(self):
        for header, value in CORS_HEADERS.items():
            self.send_header(header, value)


class WhatsAppDispatchApplication:
    """Main WhatsApp dispatch worker application."""

    def __init__(self,
                 container: Optional[ApplicationContainer] = None,
                 config_override: Optional[Dict[str, Any]] = None):
        """
        Initialize the dispatch worker application.

        Args:
            container: Pre-built container (created from the environment if None)
            config_override: Optional environment variable overrides
        """
        if config_override:
            for key, value in config_override.items():
                os.environ[key] = str(value)

        self.container = container or create_app()
        self.settings = self.container.settings

        self.logger = self.container.logger
        self.perf_logger = get_performance_logger()
        self.error_handler = self.container.error_handler

        # Application state
        self.initialized = False
        self.running = False
        self.shutdown_requested = False
        self.last_result: Optional[Dict[str, Any]] = None
        self.startup_time = datetime.now()
        self.http_server: Optional[HTTPServer] = None
        self.http_thread: Optional[threading.Thread] = None

        self.logger.info(
            "WhatsApp dispatch worker created",
            extra={
                "version": self.settings.app_version,
                "environment": self.settings.environment.value,
                "debug": self.settings.debug
            }
        )

    @monitor_performance("application", "initialize")
    def initialize(self) -> bool:
        """
        Initialize all application components.

        Returns:
            True if initialization successful
        """
        if self.initialized:
            self.logger.warning("Application already initialized")
            return True

        try:
            self.logger.info("Initializing application components...")

            if not self.container.initialize():
                self.logger.error("Failed to initialize application container")
                return False

            self.initialized = True
            self.logger.info("All components initialized successfully")
            return True

        except Exception as e:
            self.error_handler.report_error(e, "application", context={"operation": "initialize"})
            return False

    def handle_invocation(self) -> Tuple[int, Dict[str, Any]]:
        """Run one dispatch pass for an HTTP or CLI invocation."""
        if not self.initialized:
            return 500, {
                'success': False,
                'error': 'Application not initialized',
                'timestamp': datetime.now(timezone.utc).isoformat(),
            }

        run_id = uuid.uuid4().hex[:12]

        with self.perf_logger.timer("dispatch_pass", run_id=run_id):
            status_code, result = execute_dispatch(self.container.dispatcher, self.error_handler)

        self.perf_logger.log_dispatch_metrics(run_id, {
            k: v for k, v in result.items() if k not in ('message', 'timestamp')
        })

        self.last_result = result
        return status_code, result

    def gateway_status(self) -> Dict[str, Any]:
        """Gateway connectivity snapshot in the gateway's own field names."""
        return self.container.gateway.get_status().to_dict()

    def start(self) -> bool:
        """
        Start the scheduled dispatch loop.

        Returns:
            True if started successfully
        """
        if not self.initialized:
            if not self.initialize():
                return False

        if self.running:
            self.logger.warning("Application is already running")
            return True

        try:
            self.logger.info("Starting WhatsApp dispatch worker...")

            if self.settings.schedule.enabled and self.container.scheduler:
                self.container.scheduler.start()
                self.logger.info("Scheduler started")

            self.running = True
            self.logger.info("WhatsApp dispatch worker started successfully")
            return True

        except Exception as e:
            self.error_handler.report_error(e, "application", context={"operation": "start"})
            return False

    def stop(self):
        """Stop the application gracefully."""
        if self.http_server:
            self.http_server.shutdown()
            self.http_server.server_close()
            self.http_server = None

        if not self.running:
            self.logger.info("Application is not running")
            return

        self.logger.info("Stopping WhatsApp dispatch worker...")
        self.shutdown_requested = True

        try:
            self.container.shutdown()
            self.running = False
            self.logger.info("WhatsApp dispatch worker stopped")

        except Exception as e:
            self.error_handler.report_error(e, "application", context={"operation": "stop"})

    def run_once(self) -> bool:
        """
        Run a single dispatch pass and exit.

        Returns:
            True if the pass completed without crashing
        """
        if not self.initialize():
            return False

        status_code, _ = self.handle_invocation()
        return status_code == 200

    def create_http_server(self) -> HTTPServer:
        """Bind the invocation server without starting it."""
        server = HTTPServer((self.settings.server.host, self.settings.server.port), DispatchRequestHandler)
        server.app = self
        return server

    def serve(self):
        """Serve the HTTP invocation endpoint in the foreground."""
        if not self.initialize():
            sys.exit(1)

        self._setup_signal_handlers()
        self.running = True
        self.http_server = self.create_http_server()

        self.logger.info(
            f"Invocation server listening on {self.settings.server.host}:{self.http_server.server_port}"
            f"{self.settings.server.invoke_path}"
        )

        try:
            self.http_server.serve_forever()
        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            self.stop()

    def run_daemon(self):
        """Run as a daemon with scheduled dispatch passes and the HTTP endpoint alongside."""
        if not self.start():
            sys.exit(1)

        self._setup_signal_handlers()
        self._start_http_server()

        try:
            self.logger.info("Running in daemon mode...")

            while not self.shutdown_requested:
                time.sleep(1)

        except KeyboardInterrupt:
            self.logger.info("Received keyboard interrupt")
        finally:
            self.stop()

    def get_status(self) -> Dict[str, Any]:
        """
        Get application status.

        Returns:
            Status information dictionary
        """
        status = {
            'application': {
                'name': self.settings.app_name,
                'version': self.settings.app_version,
                'environment': self.settings.environment.value,
                'initialized': self.initialized,
                'running': self.running,
                'startup_time': self.startup_time.isoformat(),
                'uptime_seconds': (datetime.now() - self.startup_time).total_seconds()
            }
        }

        if self.initialized:
            status.update(self.container.get_component_status())

        if self.last_result:
            status['last_dispatch'] = self.last_result

        status['error_metrics'] = self.error_handler.get_error_summary(hours=24)
        status['performance_metrics'] = self.error_handler.get_performance_summary(hours=24)
        status['logging'] = get_log_stats()

        return status

    def health_check(self) -> Dict[str, Any]:
        """
        Perform comprehensive health check.

        Returns:
            Health check results
        """
        base_health = {
            'timestamp': datetime.now().isoformat(),
            'application': {
                'healthy': self.initialized,
                'details': 'Application running normally' if self.initialized else 'Application not ready'
            }
        }

        if self.initialized:
            base_health.update(self.container.health_check())
        else:
            base_health.update({
                'healthy': False,
                'overall_status': 'unhealthy',
                'components': {},
                'unhealthy_components': ['application']
            })

        base_health['system_health'] = self.error_handler.get_health_status().to_dict()

        return base_health

    def _start_http_server(self):
        """Start the invocation and health server in a background thread."""
        try:
            self.http_server = self.create_http_server()

            def run_server():
                self.logger.info(f"HTTP server listening on port {self.http_server.server_port}")
                self.http_server.serve_forever()

            self.http_thread = threading.Thread(target=run_server, daemon=True)
            self.http_thread.start()

        except OSError as e:
            self.logger.warning(f"Failed to start HTTP server: {e}")
            self.http_server = None

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.shutdown_requested = True
            # Unblocks serve_forever() in serve mode
            raise KeyboardInterrupt

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="WhatsApp Notification Dispatch Worker")
    parser.add_argument("--mode", choices=["once", "serve", "daemon", "test"], default="serve",
                        help="Run mode: once (single pass), serve (HTTP invocation endpoint), "
                             "daemon (scheduled passes), test (validation)")
    parser.add_argument("--env-file", help="Path to .env file")
    parser.add_argument("--env", help="Environment override")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log level override")

    args = parser.parse_args()

    if args.env_file:
        from dotenv import load_dotenv
        if not os.path.exists(args.env_file):
            print(f"Environment file not found: {args.env_file}")
            return 1
        load_dotenv(args.env_file, override=True)

    if args.env:
        os.environ['ENVIRONMENT'] = args.env

    if args.log_level:
        os.environ['LOG_LEVEL'] = args.log_level

    try:
        app = WhatsAppDispatchApplication()

        if args.mode == "test":
            print("Testing WhatsApp dispatch worker configuration...")

            if not app.initialize():
                print("Initialization failed")
                return 1

            health = app.health_check()
            print(f"Health check: {'HEALTHY' if health['healthy'] else 'UNHEALTHY'}")

            for component_name, component_health in health['components'].items():
                print(f"   {component_name}: {component_health['status']}")

            gateway = app.gateway_status()
            print(f"   gateway: {gateway['apiStatus']}"
                  + (f" ({gateway['error']})" if gateway.get('error') else ""))

            return 0 if health['healthy'] else 1

        elif args.mode == "once":
            success = app.run_once()
            print(json.dumps(app.last_result or {}, indent=2, default=str))
            return 0 if success else 1

        elif args.mode == "daemon":
            app.run_daemon()
            return 0

        else:
            app.serve()
            return 0

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 0

    except Exception as e:
        print(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
