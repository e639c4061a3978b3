"""
Configuration file for the advisory agents.

Loads configuration from environment variables with sensible defaults.
API keys should be set in .env file (not committed to version control).
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
# Look for .env in project root
_project_root = Path(__file__).parent.parent.parent
_env_path = _project_root / ".env"
load_dotenv(_env_path)

# Gemini API Configuration
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
if not GEMINI_API_KEY:
    import warnings
    warnings.warn(
        "GEMINI_API_KEY not set. Advisory calls will use the fallback tables. "
        "Set it in your .env file or environment."
    )

# Model configuration
GEMINI_MODEL_NAME = os.environ.get("GEMINI_MODEL_NAME", "gemini-2.5-flash")
ADVISORY_TIMEOUT_S = float(os.environ.get("ADVISORY_TIMEOUT_S", "4.0"))

# Movement-classification channel
MOVEMENT_CACHE_TTL_MS = 2000.0
MOVEMENT_MIN_INTERVAL_MS = 1000.0
MOVEMENT_CACHE_MAX_ENTRIES = 50
CLASSIFY_MAX_TOKENS = 15
CLASSIFY_TEMPERATURE = 0.2

# Tip-generation channel
TIP_CACHE_TTL_MS = 3000.0
TIP_MIN_INTERVAL_MS = 2000.0
TIP_CACHE_MAX_ENTRIES = 30
TIP_MAX_TOKENS = 30
TIP_TEMPERATURE = 0.4
MAX_TIP_CHARS = 80

# Session narration (once per aggregation window)
SUMMARY_MAX_TOKENS = 120
SUMMARY_TEMPERATURE = 0.7
MAX_SUMMARY_WORDS = 60

# Quality tier -> source score used for tip priority and confidence
QUALITY_SCORES = {
    "excellent": 90.0,
    "good": 75.0,
    "needs improvement": 55.0,
    "poor": 30.0,
}

FALLBACK_CONFIDENCE = 0.5
