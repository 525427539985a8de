import logging
import os
import sys
from typing import Dict, Optional

import colorlog

from .. import constants

# builds run their stages on worker threads, so the thread name tells stages apart
CONSOLE_FORMAT = '[%(levelname).4s] %(name)s: %(message)s'
COLOR_FORMAT = '%(log_color)s[%(levelname).4s]%(reset)s %(cyan)s%(name)s%(reset)s: %(message)s'
FILE_FORMAT = '%(asctime)s [%(levelname).4s] %(threadName)s %(name)s: %(message)s'

LEVEL_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}


def use_colors(stream=None) -> bool:
    """Colored output only on a terminal, and never when NO_COLOR is set."""
    stream = stream or sys.stderr
    return stream.isatty() and not os.environ.get("NO_COLOR")


def console_handler(stream=None) -> logging.Handler:
    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    if use_colors(stream):
        handler.setFormatter(colorlog.ColoredFormatter(COLOR_FORMAT, log_colors=LEVEL_COLORS, reset=True))
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def file_handler(log_file: str) -> Optional[logging.Handler]:
    """Handler writing to ``log_file``; None (with an error logged) if it cannot be opened."""
    try:
        handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    except OSError as e:
        logging.getLogger(__name__).error(f"[Logger] Cannot write log file '{log_file}': {e}")
        return None
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def setup_logger(debug: bool = False, module_levels: Optional[Dict[str, str]] = None, log_file: Optional[str] = None):
    """
    Configure the root logger once per process.

    Later calls only adjust the root level and the per-module levels.

    Args:
        debug: log at DEBUG instead of INFO
        module_levels: per-module levels, e.g. {"cache": "DEBUG"}; defaults to
            the LAYERBUILD_LOG_LEVELS environment variable
        log_file: also write the log to this file
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    if not root.handlers:
        root.addHandler(console_handler())
        if log_file:
            handler = file_handler(log_file)
            if handler is not None:
                root.addHandler(handler)
                logging.getLogger(__name__).info(f"[Logger] Writing log to {log_file}")

    _apply_module_levels(module_levels)


def parse_module_levels(spec: Optional[str]) -> Dict[str, str]:
    """Parse "name=LEVEL,name=LEVEL" pairs into a mapping, skipping malformed pairs."""
    levels: Dict[str, str] = {}
    for pair in (spec or '').split(','):
        name, sep, level = pair.partition('=')
        if sep and name.strip() and level.strip():
            levels[name.strip()] = level.strip().upper()
    return levels


def _apply_module_levels(module_levels: Optional[Dict[str, str]]):
    if module_levels is None:
        module_levels = parse_module_levels(os.environ.get(constants.LOG_LEVELS_ENV))

    for name, level_name in module_levels.items():
        level = logging.getLevelName(level_name.upper())
        if not isinstance(level, int):
            logging.getLogger(__name__).warning(f"[Logger] Ignoring unknown level '{level_name}' for '{name}'")
            continue
        logging.getLogger(_normalize_module_name(name)).setLevel(level)


def _normalize_module_name(name: str) -> str:
    """
    Expand a short logger name: aliases from LOG_ALIAS_MAP, 'pkg.*' for a
    package, and known top-level modules get the 'layerbuild.' prefix.
    """
    if name in constants.LOG_ALIAS_MAP:
        return constants.LOG_ALIAS_MAP[name]
    name = name.removesuffix('.*')
    if name.split('.', 1)[0] in constants.KNOWN_TOP_MODULES:
        return f'layerbuild.{name}'
    return name
