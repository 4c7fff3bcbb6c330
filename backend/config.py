import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dma.db")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))
DB_READ_RETRIES = int(os.getenv("DB_READ_RETRIES", "3"))
DB_WRITE_RETRIES = int(os.getenv("DB_WRITE_RETRIES", "2"))

# Process-wide salt for token and email digests. Must be set in production.
TOKEN_SALT = os.getenv("TOKEN_SALT", "dma-default-salt-change-in-production")
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev-session-secret")
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "change-me")

ORIGINS = os.getenv("ORIGINS", "http://localhost:3000").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

MAGIC_LINK_TTL_SECONDS = int(os.getenv("MAGIC_LINK_TTL_SECONDS", str(60 * 60)))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(7 * 24 * 60 * 60)))
MAGIC_LINK_SINGLE_USE = os.getenv("MAGIC_LINK_SINGLE_USE", "false").lower() in ("1", "true", "yes")

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "").strip()
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Digital Maturity <noreply@example.org>")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000").rstrip("/")
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))

ASSESSMENT_SPEC_PATH = Path(
    os.getenv("ASSESSMENT_SPEC_PATH", str(Path(__file__).resolve().parent / "data" / "dma_v1.json"))
)
DEFAULT_POLICY_VERSION = os.getenv("DEFAULT_POLICY_VERSION", "v1.0")

SUPPORTED_LANGUAGES = ("no", "en")
SUPPORTED_SURVEY_VERSIONS = ("v1.0", "v1.1")

# (max requests, window seconds)
RATE_LIMIT_CREATE = (5, 10 * 60)
RATE_LIMIT_COMPLETE = (3, 10 * 60)
RATE_LIMIT_UPGRADE = (3, 10 * 60)
RATE_LIMIT_RETRIEVE = (20, 5 * 60)
RATE_LIMIT_MAGIC_REQUEST = (3, 60 * 60)
RATE_LIMIT_MAGIC_VERIFY = (10, 15 * 60)
RATE_LIMIT_SESSION_READ = (60, 5 * 60)

# Peers whose X-Forwarded-For / X-Real-IP headers are honoured (comma-separated IPs).
# Empty means forwarded headers are ignored and the socket peer is the client.
TRUSTED_PROXIES = frozenset(p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip())

BENCHMARK_SAMPLE_LIMIT = int(os.getenv("BENCHMARK_SAMPLE_LIMIT", "100"))
