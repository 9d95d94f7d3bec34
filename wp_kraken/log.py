import logging
import sys
from datetime import datetime
from pathlib import Path

from wp_kraken import __version__

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'


def setup_logging(log_level='INFO', log_dir='logs'):
    """Configure logging with a timestamped file and stdout output."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    log_file = log_dir / f"{timestamp}_wp_kraken.log"

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # requests/urllib3 are chatty at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    logger = logging.getLogger('wp_kraken')
    logger.info(f"wp-kraken v{__version__} started")
    logger.info(f"Log file: {log_file}")
    return logger
