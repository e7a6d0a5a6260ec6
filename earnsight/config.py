import os
import logging
from dotenv import load_dotenv
from langchain_google_genai import ChatGoogleGenerativeAI

load_dotenv()

# Setup logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

logger.info("🔧 Loading configuration...")


class ConfigurationError(Exception):
    pass


DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048
DEFAULT_SESSION_TTL_HOURS = 168


def _require_env(name: str, service: str) -> str:
    value = os.getenv(name)

    if not value:
        logger.error(f"❌ {name} environment variable not found")
        raise ConfigurationError(
            f"{service} API key not configured. Please set {name} environment variable."
        )

    if value.startswith("your_") and value.endswith("_here"):
        logger.error(f"❌ {name} is still a placeholder value")
        raise ConfigurationError(
            f"{service} API key is still set to placeholder value. Please configure with your actual API key."
        )

    return value


def get_alpha_vantage_api_key() -> str:
    """Get the Alpha Vantage API key from environment variables."""
    return _require_env("ALPHA_VANTAGE_API_KEY", "Alpha Vantage")


def get_google_api_key() -> str:
    """Get Google API key from environment variables."""
    api_key = _require_env("GOOGLE_API_KEY", "Google")
    logger.debug(f"GOOGLE_API_KEY found (length: {len(api_key)} chars)")
    return api_key


def get_logo_dev_api_key():
    """logo.dev is optional; returns None when unset."""
    return os.getenv("LOGO_DEV_API_KEY") or None


def get_database_url() -> str:
    url = os.getenv("EARNSIGHT_DATABASE_URL", "").strip()
    if url:
        return url

    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    data_dir = os.path.join(project_root, "data")
    os.makedirs(data_dir, exist_ok=True)
    return f"sqlite:///{os.path.join(data_dir, 'earnsight.db')}"


def get_session_ttl_hours() -> int:
    raw = os.getenv("EARNSIGHT_SESSION_TTL_HOURS", "")
    try:
        return int(raw) if raw else DEFAULT_SESSION_TTL_HOURS
    except ValueError:
        logger.warning(f"Invalid EARNSIGHT_SESSION_TTL_HOURS={raw!r}, using default")
        return DEFAULT_SESSION_TTL_HOURS


def get_chat_llm(model: str = None,
                 temperature: float = DEFAULT_TEMPERATURE,
                 max_output_tokens: int = DEFAULT_MAX_TOKENS) -> ChatGoogleGenerativeAI:
    """Get configured Google Generative AI Chat LLM instance.

    Raises ConfigurationError when GOOGLE_API_KEY is missing.
    """
    model = model or os.getenv("EARNSIGHT_LLM_MODEL", DEFAULT_MODEL)
    logger.info(f"🚀 Initializing ChatGoogleGenerativeAI with model: {model}")

    api_key = get_google_api_key()

    logger.debug(f"   - temperature: {temperature}")
    logger.debug(f"   - max_output_tokens: {max_output_tokens}")

    return ChatGoogleGenerativeAI(
        model=model,
        google_api_key=api_key,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout=120,
    )


def validate_configuration() -> bool:
    """Check the keys the data and generation routes depend on.

    Missing keys are reported but do not stop the server; affected routes fail
    fast with an explicit configuration error instead.
    """
    logger.info("🔍 Validating configuration...")
    ok = True
    for getter in (get_alpha_vantage_api_key, get_google_api_key):
        try:
            getter()
        except ConfigurationError as e:
            logger.warning(f"   ⚠ {e}")
            ok = False
    if ok:
        logger.info("✅ Configuration validation passed")
    return ok
