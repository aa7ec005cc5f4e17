"""
Console Notifier — clean, structured console output.

Prints the startup banner and lifecycle messages, and installs the
colored log formatter every module's logger writes through.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone

# ANSI color codes for terminal styling
_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[91m"
_GREEN = "\033[92m"
_YELLOW = "\033[93m"
_BLUE = "\033[94m"
_CYAN = "\033[96m"
_WHITE = "\033[97m"
_GRAY = "\033[90m"

_LEVEL_COLORS = {
    logging.DEBUG: _GRAY,
    logging.INFO: _CYAN,
    logging.WARNING: _YELLOW,
    logging.ERROR: _RED,
    logging.CRITICAL: _RED + _BOLD,
}


class ConsoleFormatter(logging.Formatter):
    """``[timestamp] LEVEL name: message`` with the level colored."""

    def __init__(self, color: bool = True) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        level = f"{record.levelname:<7}"
        if self.color:
            level = f"{_LEVEL_COLORS.get(record.levelno, '')}{level}{_RESET}"
            line = f"{_GRAY}[{ts}]{_RESET} {level} {_DIM}{record.name}:{_RESET} {record.getMessage()}"
        else:
            line = f"[{ts}] {level} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO") -> None:
    """Route all ``statusrelay`` logging to stdout at ``level``."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ConsoleFormatter(color=sys.stdout.isatty()))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # aiohttp's access log is noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def print_banner() -> None:
    """Print the startup banner."""
    banner = f"""
{_BOLD}{_CYAN}+------------------------------------------------------------------+
|          Status Relay -- Incident Webhook Relay                  |
|          Polled * Pushed * Edited in place                       |
+------------------------------------------------------------------+{_RESET}
"""
    print(banner)


def print_monitoring_start(page_count: int, hook_count: int, poll_interval: float) -> None:
    """Print a message once the registry is loaded."""
    print(
        f"  {_BOLD}{_BLUE}> Relaying:{_RESET} {_WHITE}{page_count} page(s){_RESET}"
        f"  {_DIM}to {hook_count} webhook(s){_RESET}"
        f"  {_DIM}[every {poll_interval:g}s]{_RESET}"
    )


def print_listening(host: str, port: int) -> None:
    print(f"  {_BOLD}{_GREEN}Listening for pushed updates on {host}:{port}{_RESET}"
          f"  {_DIM}(Press Ctrl+C to stop){_RESET}\n")


def print_warning(message: str) -> None:
    print(f"  {_YELLOW}!{_RESET}  {message}")


def print_shutdown() -> None:
    """Print shutdown message."""
    print(f"\n{_BOLD}{_CYAN}Relay stopped. Goodbye!{_RESET}\n")
