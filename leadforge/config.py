import os
from dotenv import load_dotenv

load_dotenv()


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment."""
    val = os.getenv(key, str(default)).lower()
    return val in ('true', '1', 'yes', 'on')


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_list(key: str, default: str = "") -> list:
    """Get a comma-separated list from environment."""
    val = os.getenv(key, default)
    return [x.strip() for x in val.split(",") if x.strip()]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
DB_PATH = os.getenv(
    "LEADFORGE_DB_PATH",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "leadforge.db"),
)

# ---------------------------------------------------------------------------
# Places provider
# ---------------------------------------------------------------------------
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
PLACES_BASE_URL = os.getenv("PLACES_BASE_URL", "https://places.googleapis.com/v1")
PLACES_LANGUAGE = os.getenv("PLACES_LANGUAGE", "fr")

# Fields requested from the provider. Keeping these narrow keeps the SKU cheap.
SEARCH_FIELD_MASK = ",".join([
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.nationalPhoneNumber",
    "places.internationalPhoneNumber",
    "places.websiteUri",
    "places.rating",
    "places.userRatingCount",
    "places.businessStatus",
    "places.location",
    "places.types",
])
DETAIL_FIELD_MASK = ",".join([
    "id",
    "displayName",
    "formattedAddress",
    "nationalPhoneNumber",
    "internationalPhoneNumber",
    "websiteUri",
    "rating",
    "userRatingCount",
    "businessStatus",
    "location",
    "types",
])

REQUEST_TIMEOUT = _get_int("REQUEST_TIMEOUT", 30)  # seconds
PROVIDER_MAX_RETRIES = _get_int("PROVIDER_MAX_RETRIES", 3)
PROVIDER_RETRY_BASE_DELAY = _get_float("PROVIDER_RETRY_BASE_DELAY", 1.0)  # seconds

# ---------------------------------------------------------------------------
# Usage caps
# ---------------------------------------------------------------------------
PER_RUN_SEARCH_LIMIT = _get_int("PER_RUN_SEARCH_LIMIT", 100)
PER_RUN_DETAIL_LIMIT = _get_int("PER_RUN_DETAIL_LIMIT", 200)
PER_RUN_MAX_PLACES = _get_int("PER_RUN_MAX_PLACES", 300)

DAILY_SEARCH_LIMIT = _get_int("DAILY_SEARCH_LIMIT", 5000)
DAILY_DETAIL_LIMIT = _get_int("DAILY_DETAIL_LIMIT", 5000)
MONTHLY_SEARCH_LIMIT = _get_int("MONTHLY_SEARCH_LIMIT", 50000)
MONTHLY_DETAIL_LIMIT = _get_int("MONTHLY_DETAIL_LIMIT", 50000)

SEARCH_PRICE_PER_THOUSAND = _get_float("SEARCH_PRICE_PER_THOUSAND", 32.0)
DETAIL_PRICE_PER_THOUSAND = _get_float("DETAIL_PRICE_PER_THOUSAND", 17.0)

WARN_AT_80 = _get_bool("WARN_AT_80", True)
WARN_AT_95 = _get_bool("WARN_AT_95", True)

# ---------------------------------------------------------------------------
# Grid search
# ---------------------------------------------------------------------------
GRID_CELL_KM = _get_float("GRID_CELL_KM", 5.0)
MAX_RESULTS_PER_PAGE = 20

# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------
# Trailing digits compared when matching phones. Lower values catch more
# formatting variants but collide across regions with overlapping numbering.
PHONE_MATCH_DIGITS = _get_int("PHONE_MATCH_DIGITS", 8)

# ---------------------------------------------------------------------------
# Smart template selection
# ---------------------------------------------------------------------------
SMART_RATING_THRESHOLD = _get_float("SMART_RATING_THRESHOLD", 4.3)
SMART_REVIEW_THRESHOLD = _get_int("SMART_REVIEW_THRESHOLD", 15)
SMART_DESIGN_THRESHOLD = _get_int("SMART_DESIGN_THRESHOLD", 60)
SMART_PERFORMANCE_THRESHOLD = _get_int("SMART_PERFORMANCE_THRESHOLD", 50)
SMART_MIN_WEBSITE_LENGTH = _get_int("SMART_MIN_WEBSITE_LENGTH", 5)

# "random": pick any eligible template when neither the segment tag nor
# "general" is available. "none": leave the send without a template.
SMART_FALLBACK = os.getenv("SMART_FALLBACK", "random").lower()

# ---------------------------------------------------------------------------
# Campaign defaults
# ---------------------------------------------------------------------------
DEFAULT_DAILY_LIMIT = _get_int("DEFAULT_DAILY_LIMIT", 50)
DEFAULT_MIN_DELAY = _get_int("DEFAULT_MIN_DELAY", 5)
DEFAULT_MAX_DELAY = _get_int("DEFAULT_MAX_DELAY", 45)
DEFAULT_COOLDOWN_DAYS = _get_int("DEFAULT_COOLDOWN_DAYS", 30)
DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "fr")

GENERIC_EMAIL_PREFIXES = _get_list(
    "GENERIC_EMAIL_PREFIXES",
    "info,contact,hello,support,admin,office,sales,help,service,team,mail,"
    "enquiry,enquiries,reception,general,bonjour",
)

# ---------------------------------------------------------------------------
# Email discovery on lead websites
# ---------------------------------------------------------------------------
ENRICH_PATHS = _get_list(
    "ENRICH_PATHS",
    "/,/contact,/about,/about-us,/legal,/mentions-legales,/impressum,/kontakt",
)
ENRICH_TIMEOUT = _get_int("ENRICH_TIMEOUT", 10)  # seconds per page
ENRICH_BATCH_LIMIT = _get_int("ENRICH_BATCH_LIMIT", 50)
ENRICH_USER_AGENT = os.getenv(
    "ENRICH_USER_AGENT", "Mozilla/5.0 (compatible; LeadForge/1.0)"
)
# Typed in by a person, so trusted more than a scraped address
MANUAL_EMAIL_CONFIDENCE = _get_float("MANUAL_EMAIL_CONFIDENCE", 0.8)

# ---------------------------------------------------------------------------
# Email / SMTP
# ---------------------------------------------------------------------------
SMTP_HOST = os.getenv("SMTP_HOST", "smtp-relay.brevo.com")
SMTP_PORT = _get_int("SMTP_PORT", 587)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SENDER_EMAIL = os.getenv("SENDER_EMAIL", SMTP_USER)
DEFAULT_SENDER_NAME = os.getenv("DEFAULT_SENDER_NAME", "LeadForge")
APP_URL = os.getenv("APP_URL", "http://localhost:3000")

# Dry run mode (don't actually send)
DRY_RUN = _get_bool("DRY_RUN", False)

# ---------------------------------------------------------------------------
# Engagement stats
# ---------------------------------------------------------------------------
BREVO_API_KEY = os.getenv("BREVO_API_KEY", "")
BREVO_STATS_URL = os.getenv(
    "BREVO_STATS_URL", "https://api.brevo.com/v3/smtp/statistics/reports"
)


def get_caps() -> dict:
    """Snapshot of the caps currently in force, stored on each search run."""
    return {
        'per_run_search': PER_RUN_SEARCH_LIMIT,
        'per_run_detail': PER_RUN_DETAIL_LIMIT,
        'per_run_max_places': PER_RUN_MAX_PLACES,
        'daily_search': DAILY_SEARCH_LIMIT,
        'daily_detail': DAILY_DETAIL_LIMIT,
        'monthly_search': MONTHLY_SEARCH_LIMIT,
        'monthly_detail': MONTHLY_DETAIL_LIMIT,
        'search_price_per_thousand': SEARCH_PRICE_PER_THOUSAND,
        'detail_price_per_thousand': DETAIL_PRICE_PER_THOUSAND,
    }


def validate_config() -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []

    if not GOOGLE_MAPS_API_KEY:
        errors.append("GOOGLE_MAPS_API_KEY not set (search disabled)")

    if not SMTP_USER or not SMTP_PASSWORD:
        errors.append("SMTP_USER / SMTP_PASSWORD not set (email sending disabled)")

    if not BREVO_API_KEY:
        errors.append("BREVO_API_KEY not set (engagement stats disabled)")

    if DEFAULT_MIN_DELAY > DEFAULT_MAX_DELAY:
        errors.append("DEFAULT_MIN_DELAY is greater than DEFAULT_MAX_DELAY")

    if SMART_FALLBACK not in ('random', 'none'):
        errors.append(f"SMART_FALLBACK must be 'random' or 'none', got '{SMART_FALLBACK}'")

    return errors
