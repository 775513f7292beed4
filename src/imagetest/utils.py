"""Helper functions used across the codebase."""
import contextlib
import threading

from rich.console import Console
from rich.markup import escape

CONSOLE = Console()


def print_exception(message: str):
    """Prints an exception to console including its traceback.

    Arguments:
        message: error message to print.
    """
    CONSOLE.print(f"[bold red]ERROR[/] [red]{escape(message)}[/]")
    CONSOLE.print_exception()


def print_info(message: str):
    """Prints an informational message.

    Arguments:
        message: informational message to print.
    """
    CONSOLE.print(escape(message))


def log(message: str):
    """Prints a message with contextual information (i.e. timestamp).

    Arguments:
        message: informational message to print.
    """
    CONSOLE.log(escape(message))


def success(message: str):
    """Logs a message reporting a successful operation.

    Arguments:
        message: message to print.
    """
    CONSOLE.log(f"[green]{escape(message)}[/]")


def warning(message: str):
    """Logs a message reporting something the user should look at.

    Arguments:
        message: message to print.
    """
    CONSOLE.log(f"[yellow]{escape(message)}[/]")


def error(message: str):
    """Logs a message reporting a failed operation.

    Arguments:
        message: message to print.
    """
    CONSOLE.log(f"[bold red]{escape(message)}[/]")


_STATUS = None
_STATUS_MESSAGE = None
_STATUS_LOCK = threading.RLock()


@contextlib.contextmanager
def print_waiting(message: str, sep: str = " → "):
    """Shows a spinner until the context is exited.

    This context manager can be nested and it will concatenate the messages using
    the given separator. Only one spinner can be live at a time, so calls coming
    from other threads while a spinner is shown just log the message.

    Arguments:
        message: message to show while is context is still getting executed.
    """
    global _STATUS, _STATUS_MESSAGE  # pylint: disable=global-statement

    owner = _STATUS_LOCK.acquire(blocking=False)  # pylint: disable=consider-using-with

    if not owner:
        log(message)
        yield
        return

    try:
        if _STATUS is None:
            with CONSOLE.status(escape(message)) as status:
                _STATUS = status
                _STATUS_MESSAGE = [message]

                try:
                    yield

                finally:
                    _STATUS = None
                    _STATUS_MESSAGE = None

        else:
            _STATUS_MESSAGE.append(message)
            _STATUS.update(escape(sep.join(_STATUS_MESSAGE)))

            try:
                yield

            finally:
                _STATUS_MESSAGE.pop()
                _STATUS.update(escape(sep.join(_STATUS_MESSAGE)))

    finally:
        _STATUS_LOCK.release()
