import json as _json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent

_CONFIG_PATH = Path(os.environ.get("THOUGHTGRAPH_CONFIG", ROOT / "thoughtgraph.config.json"))
_DEFAULTS = {
    "port": 3001,
    "host": "0.0.0.0",
    "data_file": "thoughts-data.json",
    "backup_dir": None,
    "static_dir": "dist",
    "cors_origin": "*",
    "max_body_mb": 50,
    "server_url": "http://localhost:3001",
    "request_timeout": 10,
    "save_delay": 2,
    "poll_interval": 10,
    "local_backup_dir": ".thoughtgraph",
    "graph_width": 800,
    "graph_height": 600,
    "minimap_width": 200,
    "minimap_height": 150,
    "max_mention_suggestions": 5,
}


def _load_config(path: Path = _CONFIG_PATH) -> dict:
    cfg = dict(_DEFAULTS)
    if path.is_file():
        try:
            with open(path) as f:
                user = _json.load(f)
            cfg.update(user)
        except (OSError, ValueError) as e:
            logger.warning("could not load %s: %s", path.name, e)
    return cfg


def _resolve(raw) -> Path | None:
    if not raw:
        return None
    p = Path(raw)
    return p if p.is_absolute() else ROOT / p


_cfg = _load_config()

PORT = int(_cfg["port"])
HOST = _cfg["host"]
DATA_FILE = _resolve(_cfg["data_file"])
BACKUP_DIR = _resolve(_cfg["backup_dir"])
STATIC_DIR = _resolve(_cfg["static_dir"])
CORS_ORIGIN = _cfg["cors_origin"]
MAX_BODY_BYTES = int(_cfg["max_body_mb"]) * 1024 * 1024
SERVER_URL = str(_cfg["server_url"]).rstrip("/")
REQUEST_TIMEOUT = float(_cfg["request_timeout"])
SAVE_DELAY = max(0.0, float(_cfg["save_delay"]))
POLL_INTERVAL = max(1.0, float(_cfg["poll_interval"]))
LOCAL_BACKUP_DIR = _resolve(_cfg["local_backup_dir"])
DEFAULT_VIEWPORT = (int(_cfg["graph_width"]), int(_cfg["graph_height"]))
MINIMAP_VIEWPORT = (int(_cfg["minimap_width"]), int(_cfg["minimap_height"]))
MAX_MENTION_SUGGESTIONS = int(_cfg["max_mention_suggestions"])
