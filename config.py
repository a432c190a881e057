import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env")

DB_FILE = os.path.join(os.path.dirname(__file__), "roadfix.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_FILE}")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Reverse geocoding (Nominatim-compatible endpoint)
GEOCODER_URL = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org")
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "roadfix-dispatch/1.0")
# Public endpoint is rate-sensitive: at most one lookup per location kind per window
GEOCODE_DEBOUNCE_SECONDS = float(os.getenv("GEOCODE_DEBOUNCE_SECONDS", "5"))

# Seconds between mechanic location broadcasts, per client context
LOCATION_CADENCES = {
    "dashboard": float(os.getenv("LOCATION_CADENCE_DASHBOARD", "60")),
    "map": float(os.getenv("LOCATION_CADENCE_MAP", "5")),
    "navigation": float(os.getenv("LOCATION_CADENCE_NAVIGATION", "30")),
}

WRITE_RETRY_ATTEMPTS = int(os.getenv("WRITE_RETRY_ATTEMPTS", "3"))
WRITE_RETRY_DELAY = float(os.getenv("WRITE_RETRY_DELAY", "0.2"))
