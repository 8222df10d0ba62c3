import os, copy, yaml
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from dotenv import load_dotenv

CONFIG_PATH = os.environ.get(
    "JAT_CONFIG",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config.yaml")
)

load_dotenv()

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "app": {
        "timezone": "UTC",
        "log_level": "INFO",
        "account": "me",
    },
    "pipeline": {
        "workers": 4,
        "relevance_threshold": 0.6,
        "review_below_threshold": True,
        "backend_timeout": 30.0,
        "max_abandoned_calls": 8,
        "selection_method": "auto_best",
        "attempts_per_backend": 1,
        "page_size": 100,
    },
    "cache": {
        "ttl_hours": 24,
        "body_prefix_chars": 1000,
    },
    "backends": {
        "relevance": "rules",
        "extraction": ["rules"],
        "options": {},
    },
    "matching": {
        "title_similarity_threshold": 0.7,
    },
    "storage": {
        "db_path": os.path.join("data", "tracker.db"),
    },
}


@dataclass
class Settings:
    app: Dict[str, Any] = field(default_factory=dict)
    pipeline: Dict[str, Any] = field(default_factory=dict)
    cache: Dict[str, Any] = field(default_factory=dict)
    backends: Dict[str, Any] = field(default_factory=dict)
    matching: Dict[str, Any] = field(default_factory=dict)
    storage: Dict[str, Any] = field(default_factory=dict)

    def backend_options(self, name: str) -> Dict[str, Any]:
        return dict((self.backends.get("options") or {}).get(name) or {})


def _merge_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(DEFAULTS)
    for block, values in (cfg or {}).items():
        if block not in merged:
            raise ValueError(f"Unknown config block: {block}")
        merged[block].update(values or {})
    return merged


def _apply_env(cfg: Dict[str, Any]) -> None:
    if os.environ.get("JAT_DB_PATH"):
        cfg["storage"]["db_path"] = os.environ["JAT_DB_PATH"]
    if os.environ.get("JAT_LOG_LEVEL"):
        cfg["app"]["log_level"] = os.environ["JAT_LOG_LEVEL"]
    if os.environ.get("JAT_LLM_COMMAND"):
        options = cfg["backends"].setdefault("options", {})
        options.setdefault("llm_command", {})["command"] = os.environ["JAT_LLM_COMMAND"]


def load_settings(path: Optional[str] = None) -> Settings:
    path = path or CONFIG_PATH
    cfg: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    # missing blocks fall back to DEFAULTS
    merged = _merge_defaults(cfg)
    _apply_env(merged)
    extraction = merged["backends"].get("extraction")
    if isinstance(extraction, str):
        merged["backends"]["extraction"] = [extraction]
    return Settings(**merged)
