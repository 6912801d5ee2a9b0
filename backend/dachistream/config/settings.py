"""Application settings and configuration loading.

Responsibilities:
- Load environment variables (supports both repo root `.env` and `backend/.env`).
- Load the YAML config (reply system prompt, default stream settings, engine
  options) from a configurable path, with sane defaults.
- Provide typed accessors for the host process.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from loguru import logger
import yaml

from ..engine.buffer import OverflowPolicy
from ..storage.base import StreamSettings


@dataclass
class EngineOptions:
    """Scheduler hardening knobs. Defaults keep the permissive behaviour."""

    max_buffer_size: Optional[int] = None
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    skip_overlapping_cycles: bool = False
    callback_timeout_secs: Optional[float] = None
    history_limit: int = 500

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EngineOptions":
        max_size = data.get("max_buffer_size")
        timeout = data.get("callback_timeout_secs")
        return EngineOptions(
            max_buffer_size=int(max_size) if max_size else None,
            overflow_policy=OverflowPolicy(data.get("overflow_policy", OverflowPolicy.DROP_OLDEST.value)),
            skip_overlapping_cycles=bool(data.get("skip_overlapping_cycles", False)),
            callback_timeout_secs=float(timeout) if timeout else None,
            history_limit=int(data.get("history_limit", 500)),
        )


@dataclass
class AppConfig:
    """Runtime settings loaded from env and YAML config."""

    system_prompt: str
    control_key: str = "devlocal"
    host: str = "127.0.0.1"
    port: int = 8710

    twitch_channel: str = ""
    twitch_client_id: str = ""
    twitch_client_secret: str = ""
    twitch_bot_id: str = ""
    twitch_owner_id: str = ""
    twitch_token_path: str = "backend/.twitch_user_token.json"

    openrouter_api_key: Optional[str] = None
    http_referer: str = "http://localhost"

    stream: StreamSettings = field(default_factory=StreamSettings)
    engine: EngineOptions = field(default_factory=EngineOptions)

    @staticmethod
    def _candidate_paths() -> List[Path]:
        base_dir = Path(__file__).resolve().parent  # backend/dachistream/config
        env_path_raw = os.getenv("DACHISTREAM_CONFIG_PATH", "").strip()

        candidates: List[Path] = []
        if env_path_raw:
            env_path = Path(env_path_raw).expanduser()
            if env_path.is_absolute():
                candidates.append(env_path)
            else:
                candidates.append(Path.cwd() / env_path)
                candidates.append(base_dir / env_path)

        candidates.extend(
            [
                base_dir / "dachistream.yaml",
                base_dir.parent.parent / "config" / "dachistream.yaml",  # backend/config/dachistream.yaml
                Path.cwd() / "config" / "dachistream.yaml",
                Path.cwd() / "backend" / "config" / "dachistream.yaml",
            ]
        )
        return candidates

    @staticmethod
    def load() -> "AppConfig":
        """Load settings from env and YAML.

        Order of env loading:
        1) repo root `.env`
        2) `backend/.env`
        Existing env values take precedence over later files.
        """
        load_dotenv(Path(".env"))
        load_dotenv(Path("backend/.env"))

        candidates = AppConfig._candidate_paths()
        config_path = next((p for p in candidates if p.exists()), None)
        if config_path is None:
            logger.error("Config YAML not found. Checked: " + ", ".join(str(p) for p in candidates))
            raise FileNotFoundError("dachistream.yaml not found in expected locations")

        try:
            with config_path.open("r", encoding="utf-8") as fp:
                data: Dict[str, Any] = yaml.safe_load(fp) or {}
        except Exception as exc:
            logger.exception(f"Failed to load config YAML: {exc}")
            raise

        return AppConfig.from_mapping(data)

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "AppConfig":
        """Build from parsed YAML plus the current environment."""
        if "system_prompt" not in data or not isinstance(data["system_prompt"], str):
            raise ValueError("YAML must contain a top-level 'system_prompt' string field")

        server = data.get("server", {}) or {}
        config = AppConfig(
            system_prompt=data["system_prompt"].rstrip() + "\n",
            control_key=os.getenv("CONTROL_KEY", "devlocal"),
            host=os.getenv("DACHISTREAM_HOST", str(server.get("host", "127.0.0.1"))),
            port=int(os.getenv("DACHISTREAM_PORT", server.get("port", 8710))),
            twitch_channel=(os.getenv("TWITCH_CHANNEL") or "").strip(),
            twitch_client_id=os.getenv("TWITCH_CLIENT_ID", ""),
            twitch_client_secret=os.getenv("TWITCH_CLIENT_SECRET", ""),
            twitch_bot_id=os.getenv("TWITCH_BOT_ID", ""),
            twitch_owner_id=os.getenv("TWITCH_OWNER_ID", ""),
            twitch_token_path=os.getenv("TWITCH_TOKEN_PATH", "backend/.twitch_user_token.json"),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
            http_referer=os.getenv("HTTP_REFERER", "http://localhost"),
            stream=StreamSettings.from_dict(data.get("stream", {}) or {}),
            engine=EngineOptions.from_dict(data.get("engine", {}) or {}),
        )

        logger.info(
            f"Loaded settings (strategy={config.stream.dachiastream_selection_strategy}, "
            f"interval={config.stream.dachiastream_cycle_interval}s, channel={config.twitch_channel or '-'})"
        )
        return config
