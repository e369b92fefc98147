"""
Logging Setup for the Compression Engine
Initializes logging configuration from YAML file
"""

import os
import glob
import logging
import logging.config
import logging.handlers
from typing import Optional

import yaml
from colorama import init, Fore, Style

# Initialize colorama for Windows compatibility
init(autoreset=True)

ROOT_LOGGER_NAME = 'compressit'
PACKAGED_LOGGING_CONFIG = os.path.join(os.path.abspath(os.path.dirname(__file__)), 'config', 'logging.yaml')


class ColoredFormatter(logging.Formatter):
    """Custom formatter to add colors to console output"""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.MAGENTA + Style.BRIGHT,
    }

    def format(self, record):
        # Color a copy so file handlers sharing the record see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        if record.levelname in self.COLORS:
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{Style.RESET_ALL}"
        return super().format(record)


def _default_config(logs_dir: str) -> dict:
    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'detailed': {
                'format': '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S'
            },
            'console': {
                'format': '%(asctime)s | %(levelname)-8s | %(message)s',
                'datefmt': '%H:%M:%S'
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'level': 'WARNING',
                'formatter': 'console',
                'stream': 'ext://sys.stdout'
            },
            'file': {
                'class': 'logging.handlers.RotatingFileHandler',
                'level': 'DEBUG',
                'formatter': 'detailed',
                'filename': os.path.join(logs_dir, 'compressit.log'),
                'mode': 'a',
                'maxBytes': 10 * 1024 * 1024,
                'backupCount': 5,
                'encoding': 'utf-8'
            },
        },
        'loggers': {
            ROOT_LOGGER_NAME: {
                'level': 'DEBUG',
                'handlers': ['console', 'file'],
                'propagate': False
            }
        },
        'root': {
            'level': 'WARNING',
            'handlers': ['console']
        }
    }


def _cleanup_old_logs(logs_dir: str = "logs", keep_count: int = 5):
    """
    Clean up rotated log files, keeping only the last N

    Args:
        logs_dir: Directory containing log files
        keep_count: Number of most recent log files to keep
    """
    rotated_logs = glob.glob(os.path.join(logs_dir, "*.log.*"))
    if len(rotated_logs) <= keep_count:
        return

    rotated_logs.sort(key=os.path.getmtime, reverse=True)
    for old_log in rotated_logs[keep_count:]:
        try:
            os.remove(old_log)
        except OSError as e:
            logging.getLogger(ROOT_LOGGER_NAME).warning(
                f"Log cleanup: could not remove {os.path.basename(old_log)}: {e}")


def _redirect_file_handlers(logging_config: dict, logs_dir: str):
    """Point file handlers at logs_dir so relative filenames follow the chosen directory"""
    for handler in logging_config.get('handlers', {}).values():
        filename = handler.get('filename')
        if filename and not os.path.isabs(filename):
            handler['filename'] = os.path.join(logs_dir, os.path.basename(filename))


def setup_logging(config_path: Optional[str] = None, log_level: Optional[str] = None,
                  logs_dir: str = "logs") -> logging.Logger:
    """
    Setup logging configuration from YAML file

    Args:
        config_path: Path to logging configuration file (packaged default when None)
        log_level: Override console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logs_dir: Directory for log files
    """
    os.makedirs(logs_dir, exist_ok=True)
    config_path = config_path or PACKAGED_LOGGING_CONFIG

    logging_config = None
    if os.path.exists(config_path):
        with open(config_path, 'r', encoding='utf-8') as file:
            config_data = yaml.safe_load(file) or {}
        logging_config = config_data.get('logging')

    if not logging_config:
        logging_config = _default_config(logs_dir)
    _redirect_file_handlers(logging_config, logs_dir)
    _cleanup_old_logs(logs_dir)

    # Override levels if an explicit log_level was provided (e.g., --debug)
    if log_level:
        log_level = log_level.upper()
        console_handler = logging_config.get('handlers', {}).get('console')
        if console_handler:
            console_handler['level'] = log_level

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setFormatter(ColoredFormatter(
                fmt='%(asctime)s | %(levelname)-8s | %(message)s',
                datefmt='%H:%M:%S'
            ))

    logger.debug("Logging initialized")
    return logger
