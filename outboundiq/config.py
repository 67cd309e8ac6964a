"""
Default settings for the OutboundIQ SDK.
"""
import os
import tempfile

# SDK version, sent in the User-Agent header
VERSION = '1.0.0'

# Server configuration
BASE_URL = os.getenv('OUTBOUNDIQ_BASE_URL', 'https://api.outboundiq.com')
METRICS_PATH = '/v1/metrics'
API_KEY = os.getenv('OUTBOUNDIQ_API_KEY')

# Delivery configuration
TRANSPORT = os.getenv('OUTBOUNDIQ_TRANSPORT', 'async')
TEMP_DIR = os.getenv('OUTBOUNDIQ_TEMP_DIR') or tempfile.gettempdir()

# HTTP client configuration
REQUEST_TIMEOUT = 5  # seconds
CONNECT_TIMEOUT = 3  # seconds, capped at half of REQUEST_TIMEOUT
MAX_RETRIES = 3
RETRY_DELAY = 1  # seconds

# Buffer configuration
BUFFER_SIZE = 100  # metrics held before a flush is forced
FLUSH_INTERVAL = 60  # seconds between time-based flushes

# Payload limits
MAX_PAYLOAD_SIZE = 65536  # 64KB
MIN_PAYLOAD_SIZE_LIMIT = 1024  # 1KB
MAX_PAYLOAD_SIZE_LIMIT = 10485760  # 10MB
# Largest payload passed to curl as a single argument; bigger ones are piped
# through stdin (Linux caps one argument at 128KB, Windows a command line at 32K chars)
MAX_INLINE_ARG_SIZE = 16384 if os.name == 'nt' else 126976
MAX_CONCURRENT_REQUESTS = 10
MIN_CONCURRENT_REQUESTS_LIMIT = 1
MAX_CONCURRENT_REQUESTS_LIMIT = 50

# Capture configuration
MAX_BODY_BYTES = 10240  # request/response bodies are truncated to this size
MIN_API_KEY_LENGTH = 32

# Logging configuration
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
