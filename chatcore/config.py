"""
ChatCore Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "chatcore.db"
_user_default_db = Path.home() / ".chatcore" / "chatcore.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


if os.getenv("CHATCORE_DB"):
    DB_PATH = os.getenv("CHATCORE_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = os.getenv("CHATCORE_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("CHATCORE_PORT", config_data.get("PORT", "39780")))
VERSION = "0.1.0"

# Stream recovery: periodically recover conversations stuck in "running"
STREAM_RECOVERY_ENABLED = _env_flag("CHATCORE_STREAM_RECOVERY", str(config_data.get("STREAM_RECOVERY_ENABLED", "true")))
# How often the recovery sweep runs (seconds)
STREAM_SWEEP_INTERVAL = float(os.getenv("CHATCORE_SWEEP_INTERVAL", config_data.get("STREAM_SWEEP_INTERVAL", "120")))
# A running conversation not updated for this many minutes is considered stuck
STREAM_STUCK_THRESHOLD_MINUTES = int(os.getenv("CHATCORE_STUCK_THRESHOLD", config_data.get("STREAM_STUCK_THRESHOLD_MINUTES", "5")))

# Bare JSONL detection in assistant markdown.
# Minimum number of patch lines before an unfenced run is treated as a visual block.
JSONL_MIN_PATCH_LINES = int(os.getenv("CHATCORE_JSONL_MIN_LINES", config_data.get("JSONL_MIN_PATCH_LINES", "2")))
# Allow blank lines between patch lines of one block
JSONL_BUFFER_BLANK_LINES = _env_flag("CHATCORE_JSONL_BUFFER_BLANKS", str(config_data.get("JSONL_BUFFER_BLANK_LINES", "true")))

# Dev: enable uvicorn hot-reload
RELOAD_ENABLED = _env_flag("CHATCORE_RELOAD", "1")


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "STREAM_RECOVERY_ENABLED": STREAM_RECOVERY_ENABLED,
        "STREAM_SWEEP_INTERVAL": STREAM_SWEEP_INTERVAL,
        "STREAM_STUCK_THRESHOLD_MINUTES": STREAM_STUCK_THRESHOLD_MINUTES,
        "JSONL_MIN_PATCH_LINES": JSONL_MIN_PATCH_LINES,
        "JSONL_BUFFER_BLANK_LINES": JSONL_BUFFER_BLANK_LINES,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
