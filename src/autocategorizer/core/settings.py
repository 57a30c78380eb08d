import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from dotenv import find_dotenv, load_dotenv

from autocategorizer.logger import get_logger

logger = get_logger(__name__)


CONFIG_FILENAME = "config.yaml"

_CONFIG_KEYS = (
    "LOG_LEVEL",
    "PIPELINE_LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "AUTO_APPLY_THRESHOLD",
    "MAX_AI_CALLS_PER_USER_PER_DAY",
    "RULE_COST_SAVING",
    "LLM_COST_SAVING",
    "SIMILARITY_THRESHOLD",
    "LLM_TIMEOUT_SECONDS",
)

DEFAULT_AUTO_APPLY_THRESHOLD = Decimal("0.85")
DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY = 5
DEFAULT_RULE_COST_SAVING = Decimal("0.005")
DEFAULT_LLM_COST_SAVING = Decimal("0.01")
DEFAULT_SIMILARITY_THRESHOLD = 90.0
DEFAULT_LLM_TIMEOUT_SECONDS = 240.0
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


def _resolve_dotenv_path() -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        candidate = os.path.join(config_dir, ".env")
        if os.path.exists(candidate):
            return candidate
    resolved = find_dotenv(usecwd=True)
    return resolved or None


def _resolve_config_path() -> str:
    config_dir = os.getenv("CONFIG_DIR")
    if config_dir:
        return os.path.join(config_dir, CONFIG_FILENAME)
    cwd = os.getcwd()
    candidate = os.path.join(cwd, "config", CONFIG_FILENAME)
    if os.path.exists(candidate):
        return candidate
    return os.path.join(cwd, CONFIG_FILENAME)


def _strip_inline_comment(raw_value: str) -> str:
    in_single = False
    in_double = False
    escaped = False
    for index, char in enumerate(raw_value):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"' and not in_single:
            in_double = not in_double
            continue
        if char == "'" and not in_double:
            in_single = not in_single
            continue
        if char == "#" and not in_single and not in_double:
            return raw_value[:index].rstrip()
    return raw_value


def _unquote_value(raw_value: str) -> str:
    if len(raw_value) < 2:
        return raw_value
    if raw_value[0] == raw_value[-1] == '"':
        return raw_value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    if raw_value[0] == raw_value[-1] == "'":
        return raw_value[1:-1].replace("\\'", "'").replace("\\\\", "\\")
    return raw_value


def read_config_file(path: str | None) -> dict[str, str]:
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            if ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            if not key:
                continue
            cleaned = _strip_inline_comment(raw_value).strip()
            if not cleaned:
                continue
            value = _unquote_value(cleaned)
            if value:
                values[key] = value
    return values


def load_environment() -> None:
    """Load `.env`, then fill keys still unset from the flat config file."""
    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    values = read_config_file(_resolve_config_path())
    for key in _CONFIG_KEYS:
        if key not in os.environ and key in values:
            os.environ[key] = values[key]


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning(
            "[ENV] %s='%s' below minimum %s, using default %s.",
            name,
            raw,
            min_value,
            default,
        )
        return default
    return value


def get_env_float(name: str, default: float = 0.0) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default


def get_env_decimal(
    name: str,
    default: Decimal,
    min_value: Decimal | None = None,
    max_value: Decimal | None = None,
) -> Decimal:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if (min_value is not None and value < min_value) or (max_value is not None and value > max_value):
        logger.warning("[ENV] %s='%s' out of range, using default %s.", name, raw, default)
        return default
    return value


_SENSITIVE_ENV_KEYS = (
    "KEY",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "PASS",
    "AUTH",
    "BEARER",
    "PRIVATE",
)


def _should_mask_env_value(name: str, value: str) -> bool:
    upper_name = name.upper()
    if any(marker in upper_name for marker in _SENSITIVE_ENV_KEYS):
        return True
    if value.startswith("sk-") or value.startswith("rk-"):
        return True
    if value.startswith("Bearer ") or value.startswith("bearer "):
        return True
    return False


def _mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not _should_mask_env_value(name, sanitized):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in _CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else _mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


@dataclass(frozen=True)
class PipelineSettings:
    """Tunables handed to the pipeline and its stages at construction time."""

    auto_apply_threshold: Decimal = DEFAULT_AUTO_APPLY_THRESHOLD
    max_ai_calls_per_user_per_day: int = DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY
    rule_cost_saving: Decimal = DEFAULT_RULE_COST_SAVING
    llm_cost_saving: Decimal = DEFAULT_LLM_COST_SAVING
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    llm_timeout_seconds: float = DEFAULT_LLM_TIMEOUT_SECONDS
    openai_model: str = DEFAULT_OPENAI_MODEL
    openai_base_url: str | None = None

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            auto_apply_threshold=get_env_decimal(
                "AUTO_APPLY_THRESHOLD",
                DEFAULT_AUTO_APPLY_THRESHOLD,
                min_value=Decimal("0"),
                max_value=Decimal("1"),
            ),
            max_ai_calls_per_user_per_day=get_env_int(
                "MAX_AI_CALLS_PER_USER_PER_DAY",
                DEFAULT_MAX_AI_CALLS_PER_USER_PER_DAY,
                min_value=1,
            ),
            rule_cost_saving=get_env_decimal(
                "RULE_COST_SAVING", DEFAULT_RULE_COST_SAVING, min_value=Decimal("0")
            ),
            llm_cost_saving=get_env_decimal(
                "LLM_COST_SAVING", DEFAULT_LLM_COST_SAVING, min_value=Decimal("0")
            ),
            similarity_threshold=get_env_float("SIMILARITY_THRESHOLD", DEFAULT_SIMILARITY_THRESHOLD),
            llm_timeout_seconds=get_env_float("LLM_TIMEOUT_SECONDS", DEFAULT_LLM_TIMEOUT_SECONDS),
            openai_model=os.getenv("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        )


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
LOG_DIR = os.getenv("LOG_DIR")

ensure_dir(DATA_DIR)
ensure_dir(LOG_DIR)
