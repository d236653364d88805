"""Convenience functions for programs that use the pl2303 package."""

import asyncio
import os
import sys
from typing import Optional

from .bringup import SessionState
from .errors import SessionStateError
from .session import Pl2303Session


def initialize_libusb_library_path_environment_variable() -> bool:
    """Initialize the LIBUSB_LIBRARY_PATH environment variable, if needed.

    In Windows, we need to tell pl2303 where the libusb-1.0 DLL can be found. This is done by
    pointing the LIBUSB_LIBRARY_PATH environment variable to the libusb-1.0 DLL.

    If the LIBUSB_LIBRARY_PATH variable is already set, or on non-Windows platforms, this function is a no-op.
    """

    if ("LIBUSB_LIBRARY_PATH" in os.environ) or (sys.platform != "win32"):
        return False

    filename = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../windows/libusb-1.0.dll"))
    if not os.path.exists(filename):
        raise RuntimeError(f"Cannot find the libusb-1.0 library at '{filename}'. Please make sure it's available.")

    os.environ["LIBUSB_LIBRARY_PATH"] = filename

    return True


async def wait_until_ready(session: Pl2303Session, timeout: Optional[float] = None) -> None:
    """Wait for the session to become ready.

    If the bring-up fails, its failure is raised. Errors that leave the bring-up running, such as a failed
    modem status read, are not; waiting continues. SessionStateError is raised if the session is closed,
    before or while waiting. asyncio.TimeoutError is raised if the session does not become ready in time.
    """

    match session.state:
        case SessionState.READY:
            return
        case SessionState.FAILED:
            raise session.bring_up_failure
        case SessionState.CLOSED:
            raise SessionStateError("wait until ready", session.state)

    outcome = asyncio.get_running_loop().create_future()

    def on_ready() -> None:
        if not outcome.done():
            outcome.set_result(None)

    def on_error(exception: Exception) -> None:
        if session.state is SessionState.FAILED and not outcome.done():
            outcome.set_exception(exception)

    def on_closed() -> None:
        if not outcome.done():
            outcome.set_exception(SessionStateError("wait until ready", SessionState.CLOSED))

    session.ready.subscribe(on_ready)
    session.error.subscribe(on_error)
    session.closed.subscribe(on_closed)
    try:
        await asyncio.wait_for(outcome, timeout)
    finally:
        session.ready.unsubscribe(on_ready)
        session.error.unsubscribe(on_error)
        session.closed.unsubscribe(on_closed)
