import logging
import logging.config
import os

from dotenv import load_dotenv
load_dotenv()

DEFAULT_LOG_FILE = 'options_market_maker.log'

# Loggers of the quoting path; DEBUG=1 turns them verbose without touching the root level
OWN_LOGGERS = (
    'market_maker',
    'rfq_client',
    'rfq_manager',
    'pricing_stream',
    'deribit_feed',
    'relay',
    'relay_server',
    'http_api',
    'price_feed_server',
)

QUIET_LOGGERS = ('asyncio', 'websockets', 'aiohttp')


def build_logging_config(log_file: str = None, console_format: str = None) -> dict:
    """
    dictConfig for the process.

    LOG_FILE overrides the log path, an empty LOG_FILE disables the file
    handler. LOG_FORMAT=simple shortens console lines.
    """
    if log_file is None:
        log_file = os.getenv('LOG_FILE', DEFAULT_LOG_FILE)
    if console_format is None:
        console_format = os.getenv('LOG_FORMAT', 'detailed')
    own_level = 'DEBUG' if os.getenv('DEBUG') else 'INFO'

    handlers = {
        'console': {
            'class': 'logging.StreamHandler',
            'level': 'DEBUG',
            'formatter': console_format,
            'stream': 'ext://sys.stdout'
        },
    }
    if log_file:
        handlers['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': 'INFO',
            'formatter': 'detailed',
            'filename': log_file,
            'maxBytes': 10485760,  # 10MB
            'backupCount': 5
        }

    loggers = {
        '': {
            'level': os.getenv('LOG_LEVEL', 'INFO'),
            'handlers': list(handlers)
        },
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {'level': 'WARNING'}
    for name in OWN_LOGGERS:
        loggers[name] = {'level': own_level, 'propagate': True}

    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'detailed': {
                'format': '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
            },
            'simple': {
                'format': '%(levelname)s - %(message)s'
            }
        },
        'handlers': handlers,
        'loggers': loggers,
    }


def setup_logging(log_file: str = None, console_format: str = None):
    """Configure logging once at application startup"""
    logging.config.dictConfig(build_logging_config(log_file, console_format))
