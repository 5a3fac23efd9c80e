"""Configuration for Partwise MCP server."""

import os

# Server settings
HTTP_PORT = int(os.getenv("HTTP_PORT", "8080"))
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_MAX_TRACKED_IPS = 10_000
# Comma-separated paths the rate limiter never counts
RATE_LIMIT_EXEMPT_PATHS = frozenset(
    p.strip() for p in os.getenv("RATE_LIMIT_EXEMPT_PATHS", "/health").split(",") if p.strip()
)

# Data sources
CATALOG_PATH = os.getenv("CATALOG_PATH", "")  # JSON or JSONL component catalog
PREFERENCE_DB_PATH = os.getenv("PREFERENCE_DB_PATH", "")  # Empty = in-memory preference store

# Result cache settings
CACHE_TTL_HOURS = float(os.getenv("CACHE_TTL_HOURS", "24"))  # Catalog-derived results
PERSONALIZED_CACHE_TTL_HOURS = float(os.getenv("PERSONALIZED_CACHE_TTL_HOURS", "6"))  # Personal behavior drifts faster
CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "5000"))  # Max cached results before LRU eviction

# Parsed specification cache (catalog adapter)
SPEC_CACHE_TTL_HOURS = 12
SPEC_CACHE_MAX_SIZE = 10000

# Alternative finder
MAX_ALTERNATIVES = int(os.getenv("MAX_ALTERNATIVES", "5"))
MIN_COMPATIBILITY_SCORE = float(os.getenv("MIN_COMPATIBILITY_SCORE", "70"))
SPEC_SCORE_WEIGHT = 0.7  # Share of the combined score taken from the analyzer
AVAILABILITY_BONUS = 15.0  # Candidate has stock > 0
PRICE_PROXIMITY_BONUS = 15.0  # Candidate price within PRICE_PROXIMITY_PCT of target
PRICE_PROXIMITY_PCT = 20.0
MAX_BATCH_SIZE = 50

# Preference learning
LEARNING_RATE = float(os.getenv("LEARNING_RATE", "0.1"))
DECAY_FACTOR = float(os.getenv("DECAY_FACTOR", "0.95"))  # 5% decay per period
DECAY_PERIOD_DAYS = float(os.getenv("DECAY_PERIOD_DAYS", "7"))
MIN_INTERACTIONS = int(os.getenv("MIN_INTERACTIONS", "5"))
CONFIDENCE_THRESHOLD = float(os.getenv("CONFIDENCE_THRESHOLD", "0.6"))
MAX_RECOMMENDATIONS = int(os.getenv("MAX_RECOMMENDATIONS", "10"))
MAX_CONFIDENCE = 0.95
CATEGORY_WEIGHTS = {
    "brand": 0.25,
    "category": 0.20,
    "success": 0.25,
}
AVAILABILITY_SCORE_BONUS = 0.1

# AI text service (optional enrichment)
AI_SERVICE_URL = os.getenv("AI_SERVICE_URL", "")
AI_SERVICE_API_KEY = os.getenv("AI_SERVICE_API_KEY", "")
AI_SERVICE_MODEL = os.getenv("AI_SERVICE_MODEL", "")
AI_SERVICE_TIMEOUT = float(os.getenv("AI_SERVICE_TIMEOUT", "30"))  # Seconds, applied by the orchestrator
AI_DAILY_LIMIT = int(os.getenv("AI_DAILY_LIMIT", "500"))

# Error log / health
ERROR_LOG_MAX_SIZE = 1000
HEALTH_MAX_ERRORS_PER_HOUR = 10
HEALTH_MAX_AI_ERRORS = 5
