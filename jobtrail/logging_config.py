"""
Logging setup for jobtrail.

Console output is one short line per record. With JOBTRAIL_DEBUG=1 (or
--verbose on the CLI) every logger under 'jobtrail' also writes full
records to jobtrail_debug.log.
"""
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Union

JOBTRAIL_DEBUG = os.getenv('JOBTRAIL_DEBUG', '').lower() in ('1', 'true', 'yes')

DEBUG_LOG_PATH = Path(__file__).parent.parent / 'jobtrail_debug.log'

APP_LOGGER_NAME = 'jobtrail'
DEBUG_HANDLER_NAME = 'jobtrail_debug_file'

# Libraries that log every HTTP request or provider call at INFO/DEBUG
QUIET_LIBRARIES = ('urllib3', 'requests', 'asyncio', 'web3')


class ConciseFormatter(logging.Formatter):
    """Colored level tag; logger name only where it helps locate the source."""

    TAGS = {
        logging.DEBUG: ("\033[90m[D]\033[0m", True),
        logging.INFO: ("\033[32m[I]\033[0m", False),
        logging.WARNING: ("\033[33m[W]\033[0m", False),
        logging.ERROR: ("\033[31m[E]\033[0m", True),
        logging.CRITICAL: ("\033[31;1m[!]\033[0m", True),
    }

    def __init__(self):
        super().__init__()
        self._by_level = {
            level: logging.Formatter(f"{tag} %(name)s: %(message)s" if with_name else f"{tag} %(message)s")
            for level, (tag, with_name) in self.TAGS.items()
        }

    def format(self, record):
        return self._by_level.get(record.levelno, self._by_level[logging.INFO]).format(record)


class VerboseFormatter(logging.Formatter):
    """Timestamped records for the debug file."""

    def __init__(self):
        super().__init__('%(asctime)s [%(levelname)s] %(name)s: %(message)s', '%Y-%m-%d %H:%M:%S')


def setup_logging(level=logging.INFO, debug: Optional[bool] = None) -> logging.Logger:
    """
    Install the console handler on the root logger and quiet chatty libraries.
    Safe to call more than once.

    Args:
        level: Console level for the root and 'jobtrail' loggers
        debug: Also write the debug file; defaults to JOBTRAIL_DEBUG
    """
    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConciseFormatter())
    console.setLevel(level)
    root = logging.getLogger()
    root.handlers[:] = [console]
    root.setLevel(level)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(level)

    if JOBTRAIL_DEBUG if debug is None else debug:
        path = setup_debug_logging()
        app_logger.info(f"Debug logging enabled - verbose logs written to {path}")
    return app_logger


def setup_debug_logging(path: Union[str, Path] = DEBUG_LOG_PATH) -> Path:
    """
    Send DEBUG and above from every 'jobtrail' logger (library modules and
    the CLI) to `path`, truncating it. Returns the path in use.
    """
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(logging.DEBUG)
    for handler in [h for h in app_logger.handlers if h.name == DEBUG_HANDLER_NAME]:
        app_logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(path, mode='w', encoding='utf-8')
    file_handler.name = DEBUG_HANDLER_NAME
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(VerboseFormatter())
    app_logger.addHandler(file_handler)
    return Path(path)


def get_logger(name: str) -> logging.Logger:
    """Logger under the 'jobtrail' tree. Use: logger = get_logger(__name__)"""
    if name == APP_LOGGER_NAME or name.startswith(APP_LOGGER_NAME + '.'):
        return logging.getLogger(name)
    return logging.getLogger(f'{APP_LOGGER_NAME}.{name}')
