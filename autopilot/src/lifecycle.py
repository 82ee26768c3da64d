from __future__ import annotations

import logging
import signal
import threading
from types import FrameType

from autopilot.src.controller import Controller, ControllerState


class ShutdownCoordinator:
    """Run a controller until a termination signal, then stop it in order.

    The first SIGTERM/SIGINT sets the controller's stop event, which lets
    workers drain whatever is already queued.  If the controller has not
    reached ``Stopped`` within ``shutdown_timeout`` seconds, or a second
    signal arrives, queued work is discarded via :meth:`Controller.abort`
    and only in-flight reconciles are waited for.
    """

    def __init__(
        self,
        controller: Controller,
        shutdown_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = controller
        self.shutdown_timeout = shutdown_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.stop_event = threading.Event()
        self._terminate = threading.Event()
        self._signal_count = 0
        self._error: BaseException | None = None

    def request_shutdown(self) -> None:
        """Ask for a graceful stop; a second request escalates to an abort."""
        self._signal_count += 1
        if self._signal_count > 1:
            self.logger.warning("Second termination request; aborting queued work")
            self.controller.abort()
        self._terminate.set()

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        self.logger.info("Received signal %d, shutting down", signum)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _run_controller(self) -> None:
        try:
            self.controller.run(self.stop_event)
        except Exception as exc:
            self._error = exc
            self.logger.exception("Controller thread crashed")
        finally:
            # Wake run() if the controller exited without being asked to.
            self._terminate.set()

    def run(self) -> bool:
        """Block until the controller stops; return True if it reached ``Stopped``.

        Re-raises any exception the controller raised (for example a failed
        cache sync) so the entry point can exit non-zero.
        """
        controller_thread = threading.Thread(
            target=self._run_controller, name="controller", daemon=True
        )
        controller_thread.start()

        self._terminate.wait()
        self.stop_event.set()

        controller_thread.join(timeout=self.shutdown_timeout)
        if controller_thread.is_alive():
            self.logger.error(
                "Controller did not drain within %ss; aborting queued work",
                self.shutdown_timeout,
            )
            self.controller.abort()
            controller_thread.join(timeout=self.shutdown_timeout)

        if controller_thread.is_alive():
            self.logger.error(
                "Controller still has in-flight reconciles after abort; giving up waiting"
            )

        if self._error is not None:
            raise self._error
        return self.controller.state is ControllerState.STOPPED
