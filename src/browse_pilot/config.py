# config.py
# Environment-driven settings. Read once at import; run.py and RunOptions
# pull their defaults from here.
#
# Swap BROWSE_PILOT_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import os

from dotenv import load_dotenv

load_dotenv()


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _webhooks(raw: str) -> dict[str, str]:
    """Parse `connector=url,connector2=url2` into a mapping."""
    hooks: dict[str, str] = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        connector, url = pair.split("=", 1)
        if connector.strip() and url.strip():
            hooks[connector.strip()] = url.strip()
    return hooks


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings:
    # --- MODEL & API ---
    OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
    BASE_URL = os.getenv("BROWSE_PILOT_BASE_URL", "https://openrouter.ai/api/v1")
    MODEL = os.getenv("BROWSE_PILOT_MODEL", "anthropic/claude-3.5-haiku")
    # History-summary merges; empty means the reasoning model does them too.
    SUMMARY_MODEL = os.getenv("BROWSE_PILOT_SUMMARY_MODEL", "")

    # --- LOOP ---
    MAX_STEPS = _int("BROWSE_PILOT_MAX_STEPS", 50)
    MAX_CONVERSATION_MESSAGES = _int("BROWSE_PILOT_MAX_MESSAGES", 28)
    REFLECTION_TIMEOUT_S = min(180.0, max(1.0, _float("BROWSE_PILOT_REFLECTION_TIMEOUT", 30.0)))

    # --- BUDGETS (0 disables a dimension) ---
    MAX_WALL_CLOCK_MS = _int("BROWSE_PILOT_MAX_WALL_CLOCK_MS", 0)
    MAX_TOTAL_TOKENS = _int("BROWSE_PILOT_MAX_TOKENS", 0)
    MAX_COST_USD = _float("BROWSE_PILOT_MAX_COST_USD", 0.0)
    COST_PER_1K_TOKENS_USD = _float("BROWSE_PILOT_COST_PER_1K_TOKENS", 0.0)

    # --- COLLABORATORS ---
    PAGE_DRIVER = os.getenv("BROWSE_PILOT_PAGE_DRIVER", "")
    WEBHOOKS = _webhooks(os.getenv("BROWSE_PILOT_WEBHOOKS", ""))
    NOTIFY_TIMEOUT_S = _float("BROWSE_PILOT_NOTIFY_TIMEOUT", 10.0)

    # --- LOGGING ---
    LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING").upper()
