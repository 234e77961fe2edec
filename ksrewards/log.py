"""Console logging setup"""

import logging
from datetime import datetime


class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    END = '\033[0m'
    GRAY = '\033[90m'


LEVEL_COLORS = {
    logging.DEBUG: Colors.GRAY,
    logging.INFO: Colors.CYAN,
    logging.WARNING: Colors.YELLOW,
    logging.ERROR: Colors.RED,
    logging.CRITICAL: Colors.RED + Colors.BOLD,
}


class CustomFormatter(logging.Formatter):
    """Custom formatter for console output"""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        if not self.use_colors:
            return f"[{timestamp}] {record.levelname}: {message}"
        color = LEVEL_COLORS.get(record.levelno, "")
        return f"{Colors.GRAY}[{timestamp}]{Colors.END} {color}{record.levelname}:{Colors.END} {message}"


def setup_logging(verbose: bool = False, use_colors: bool = True) -> logging.Logger:
    """Configure logging system"""
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(CustomFormatter(use_colors=use_colors))
    logger.addHandler(console_handler)

    # APScheduler is chatty at INFO on every job run
    logging.getLogger("apscheduler").setLevel(logging.DEBUG if verbose else logging.WARNING)

    return logger


def log_section(logger: logging.Logger, message: str, show_time: bool = False):
    width = 50
    if show_time:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        title = f"{message} - {timestamp}"
    else:
        title = message

    logger.info('─' * width)
    logger.info(f"{Colors.BOLD}{title}{Colors.END}")
    logger.info('─' * width)


def log_code(logger: logging.Logger, code: str, status: str, details: str = "", level: int = logging.INFO):
    """Log code-related information with consistent formatting"""
    logger.log(level, f"{status}: {Colors.BOLD}{code}{Colors.END} {details}".rstrip())
