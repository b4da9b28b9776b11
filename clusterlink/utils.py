"""Utility functions for the cluster link console."""

import asyncio
import html
from datetime import datetime

from prompt_toolkit import print_formatted_text as _print_pt_original
from prompt_toolkit.formatted_text import HTML, to_plain_text

from . import constants


# Console log file handle (for -l option)
_console_log_file = None


def set_console_log_file(file_handle):
    """Set the console log file handle for print_pt output."""
    global _console_log_file
    _console_log_file = file_handle


def print_pt(*args, **kwargs):
    """Wrapper for print_formatted_text that also logs to file if enabled."""
    _print_pt_original(*args, **kwargs)

    if _console_log_file:
        try:
            if args:
                text = to_plain_text(args[0])
                timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
                _console_log_file.write(f"[{timestamp}] {text}\n")
                _console_log_file.flush()
        except (OSError, ValueError):
            # Log file gone or closed; the terminal copy already went out
            pass


def timestamp():
    """Get formatted timestamp."""
    return datetime.now().strftime("%H:%M:%S")


def print_header(text):
    """Print a colored header."""
    print_pt(HTML(f"\n<b><cyan>{'='*70}</cyan></b>"))
    print_pt(HTML(f"<b><cyan>{_sanitize_for_html(text)}</cyan></b>"))
    print_pt(HTML(f"<b><cyan>{'='*70}</cyan></b>"))


def _sanitize_for_html(text):
    """Remove control characters and escape HTML entities."""
    text_str = str(text)
    filtered = "".join(
        (
            c
            if (c >= " " and c != "\x7f") or c in "\n\t"
            else f"\\x{ord(c):02x}"
        )
        for c in text_str
    )
    return html.escape(filtered, quote=False)


def print_info(text):
    """Print info message."""
    print_pt(HTML(f"<green>[INFO]</green> {_sanitize_for_html(text)}"))


def print_error(text):
    """Print error message."""
    print_pt(HTML(f"<red>[ERROR]</red> {_sanitize_for_html(text)}"))


def print_status(text):
    """Print status message."""
    print_pt(HTML(f"<blue>[STATUS]</blue> {_sanitize_for_html(text)}"))


def print_warning(text):
    """Print warning message."""
    print_pt(HTML(f"<orange>[WARNING]</orange> {_sanitize_for_html(text)}"))


def print_debug(text, level=2):
    """Print debug message when DEBUG_LEVEL >= level.

    Args:
        text: The message to print
        level: Debug level (default=2 for general debugging)
               3 = Connection state changes
               4 = Line traffic
               5 = Byte level previews
    """
    if constants.DEBUG_LEVEL < level:
        return

    ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]  # milliseconds
    print_pt(HTML(f"<gray>[DEBUG {ts}]</gray> {_sanitize_for_html(text)}"))


def print_cluster(cluster, line):
    """Print one line received from a cluster."""
    time_str = timestamp()
    print_pt(
        HTML(
            f"<yellow>[{_sanitize_for_html(cluster)} {time_str}]</yellow> "
            f"{_sanitize_for_html(line.rstrip())}"
        )
    )


def print_command(cluster, line):
    """Echo a line that was sent upstream to a cluster."""
    print_pt(
        HTML(
            f"<cyan>[CMD {_sanitize_for_html(cluster)}]</cyan> "
            f"{_sanitize_for_html(line)}"
        )
    )


def print_table_row(cols, widths, header=False):
    """Print a formatted table row."""
    row = "  "
    for col, width in zip(cols, widths):
        row += str(col).ljust(width) + "  "

    if header:
        print_pt(HTML(f"<b>{_sanitize_for_html(row)}</b>"))
        print_pt("  " + "-" * (sum(widths) + len(widths) * 2))
    else:
        print_pt(row)


def escape_visible(text):
    """Render CR, LF and NUL visibly for debug output."""
    if text is None:
        return ""
    return (
        text.replace("\\", "\\\\")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
        .replace("\0", "\\0")
    )


def preview(text, limit=256):
    """Return a short preview of a long string for logging."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


def in_loop(loop):
    """True if the caller is running inside ``loop``."""
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


def call_in_loop(loop, func, *args):
    """Run ``func`` now if we are on ``loop``, otherwise hand it over.

    Returns True if the call ran synchronously.
    """
    if loop is None or in_loop(loop) or not loop.is_running():
        func(*args)
        return True
    loop.call_soon_threadsafe(func, *args)
    return False
