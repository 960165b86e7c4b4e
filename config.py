"""
Configuration file for Allianz quote automation
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Base directory
BASE_DIR = Path(__file__).parent

ACTOR_VERSION = "2.0.0"

# Allianz quote calculator
ALLIANZ_QUOTE_URL = os.getenv(
    "ALLIANZ_QUOTE_URL",
    "https://www.allianz.de/auto/kfz-versicherung/rechner/"
)

# Webhook Configuration
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "5000"))
WEBHOOK_PATH = "/webhook"
WEBHOOK_BASE_URL = os.getenv("WEBHOOK_BASE_URL", f"http://localhost:{WEBHOOK_PORT}").rstrip("/")
# Start queue worker and cleanup scheduler when webhook_server is imported (gunicorn)
START_WORKERS_ON_IMPORT = os.getenv("START_WORKERS_ON_IMPORT", "True").lower() == "true"

# Browser Configuration (default to headless for production)
BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "True").lower() == "true"
BROWSER_TIMEOUT = int(os.getenv("BROWSER_TIMEOUT", "30000"))  # milliseconds
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
BROWSER_ARGS = [
    '--disable-gpu',
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
]

# Proxy (optional)
PROXY_SERVER = os.getenv("PROXY_SERVER", "")
PROXY_USERNAME = os.getenv("PROXY_USERNAME", "")
PROXY_PASSWORD = os.getenv("PROXY_PASSWORD", "")

# Playwright Tracing Configuration
ENABLE_TRACING = os.getenv("ENABLE_TRACING", "False").lower() == "true"
TRACE_DIR = BASE_DIR / "traces"
TRACE_DIR.mkdir(exist_ok=True)

# Wait Constants (milliseconds) - minimum settle time after an interaction
WAIT_SHORT = 500
WAIT_FIELD = 1000
WAIT_COOKIE_BANNER = 2000
WAIT_SECTION = 2000
WAIT_BRANCH = 3000
WAIT_PAGE_LOAD = 3000
WAIT_RESULTS = 5000

# Timeout Constants (milliseconds)
TIMEOUT_BODY = 10000
TIMEOUT_PAGE = 90000
STABILIZATION_TIMEOUT = int(os.getenv("STABILIZATION_TIMEOUT", "5000"))

# Typing pace for reactive inputs (milliseconds per keystroke)
TYPE_DELAY_MS = 100
DATE_TYPE_DELAY_MS = 150

# Multiplier applied to every settle wait; 0 disables the fixed sleeps
SETTLE_TIME_SCALE = float(os.getenv("SETTLE_TIME_SCALE", "1.0"))

# Diagnostics and output
LOG_DIR = BASE_DIR / "logs"
LOG_DIR.mkdir(exist_ok=True)

SCREENSHOT_DIR = BASE_DIR / "screenshots"
SCREENSHOT_DIR.mkdir(exist_ok=True)

DATASET_DIR = BASE_DIR / "datasets"
DATASET_DIR.mkdir(exist_ok=True)

# Run report callback URL (optional)
RESULT_WEBHOOK_URL = os.getenv('RESULT_WEBHOOK_URL', '').strip()
RESULT_WEBHOOK_TIMEOUT = int(os.getenv("RESULT_WEBHOOK_TIMEOUT", "30"))  # seconds
