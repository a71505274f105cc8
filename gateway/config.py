"""
Gateway configuration management.

Handles loading and validating configuration for:
- Connected platforms (WhatsApp, iMessage, Telegram, Signal)
- Home channels for each platform
- Agent engine settings (model, endpoint, system prompt)
- Cron scheduler cadence
"""

import logging
import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Sorry, I encountered an error. Please try again."
DEFAULT_POLL_INTERVAL = 60


def get_clawd_home() -> Path:
    """Resolve the Clawd home directory (respects CLAWD_HOME override)."""
    return Path(os.getenv("CLAWD_HOME", Path.home() / ".clawd"))


class Platform(Enum):
    """Supported messaging platforms."""
    LOCAL = "local"
    WHATSAPP = "whatsapp"
    IMESSAGE = "imessage"
    TELEGRAM = "telegram"
    SIGNAL = "signal"


@dataclass
class HomeChannel:
    """
    Default destination for a platform.

    When a cron job targets a platform without a specific chat ID,
    messages are sent to this home channel.
    """
    platform: Platform
    chat_id: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "chat_id": self.chat_id,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HomeChannel":
        return cls(
            platform=Platform(data["platform"]),
            chat_id=str(data["chat_id"]),
            name=data.get("name", "Home"),
        )


@dataclass
class PlatformConfig:
    """Configuration for a single messaging platform."""
    enabled: bool = False
    token: Optional[str] = None  # Bot token (Telegram)
    home_channel: Optional[HomeChannel] = None

    # Sender gating. Empty allowlist means everyone may talk to the agent.
    allowed_senders: List[str] = field(default_factory=list)
    require_mention: bool = True  # Only answer in groups when mentioned

    # Platform-specific settings (bridge_port, phone_number, cli_path, ...)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "enabled": self.enabled,
            "allowed_senders": self.allowed_senders,
            "require_mention": self.require_mention,
            "extra": self.extra,
        }
        if self.token:
            result["token"] = self.token
        if self.home_channel:
            result["home_channel"] = self.home_channel.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformConfig":
        home_channel = None
        if "home_channel" in data:
            home_channel = HomeChannel.from_dict(data["home_channel"])

        allowed = data.get("allowed_senders", [])
        if isinstance(allowed, str):
            allowed = [s.strip() for s in allowed.split(",") if s.strip()]

        return cls(
            enabled=data.get("enabled", False),
            token=data.get("token"),
            home_channel=home_channel,
            allowed_senders=[str(s) for s in allowed],
            require_mention=data.get("require_mention", True),
            extra=data.get("extra", {}),
        )


@dataclass
class AgentSettings:
    """Settings handed to the agent engine on every run."""
    model: str = "gpt-4o-mini"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    system_prompt: str = ""
    max_turns: int = 50
    allowed_tools: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "base_url": self.base_url,
            "system_prompt": self.system_prompt,
            "max_turns": self.max_turns,
            "allowed_tools": self.allowed_tools,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentSettings":
        return cls(
            model=data.get("model", "gpt-4o-mini"),
            base_url=data.get("base_url"),
            api_key=data.get("api_key"),
            system_prompt=data.get("system_prompt", "") or "",
            max_turns=data.get("max_turns", 50),
            allowed_tools=list(data.get("allowed_tools", [])),
        )


@dataclass
class GatewayConfig:
    """
    Main gateway configuration.

    Manages all platform connections, agent settings and scheduler cadence.
    """
    agent_id: str = "clawd"

    # Platform configurations
    platforms: Dict[Platform, PlatformConfig] = field(default_factory=dict)

    agent: AgentSettings = field(default_factory=AgentSettings)

    # Seconds between scheduler polls
    cron_poll_interval: int = DEFAULT_POLL_INTERVAL

    # Storage paths
    sessions_dir: Path = field(default_factory=lambda: get_clawd_home() / "sessions")
    cron_dir: Path = field(default_factory=lambda: get_clawd_home() / "cron")

    # Fixed apology shown when an agent run fails
    error_message: str = DEFAULT_ERROR_MESSAGE

    def get_enabled_platforms(self) -> List[Platform]:
        """Return list of platforms that are enabled."""
        return [p for p, c in self.platforms.items() if c.enabled]

    def get_home_channel(self, platform: Platform) -> Optional[HomeChannel]:
        """Get the home channel for a platform."""
        config = self.platforms.get(platform)
        if config:
            return config.home_channel
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "platforms": {
                p.value: c.to_dict() for p, c in self.platforms.items()
            },
            "agent": self.agent.to_dict(),
            "cron_poll_interval": self.cron_poll_interval,
            "sessions_dir": str(self.sessions_dir),
            "cron_dir": str(self.cron_dir),
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatewayConfig":
        platforms = {}
        for platform_name, platform_data in data.get("platforms", {}).items():
            try:
                platform = Platform(platform_name)
                platforms[platform] = PlatformConfig.from_dict(platform_data)
            except ValueError:
                logger.warning("Ignoring unknown platform in config: %s", platform_name)

        home = get_clawd_home()
        sessions_dir = home / "sessions"
        if "sessions_dir" in data:
            sessions_dir = Path(data["sessions_dir"])
        cron_dir = home / "cron"
        if "cron_dir" in data:
            cron_dir = Path(data["cron_dir"])

        return cls(
            agent_id=data.get("agent_id", "clawd"),
            platforms=platforms,
            agent=AgentSettings.from_dict(data.get("agent", {})),
            cron_poll_interval=data.get("cron_poll_interval", DEFAULT_POLL_INTERVAL),
            sessions_dir=sessions_dir,
            cron_dir=cron_dir,
            error_message=data.get("error_message", DEFAULT_ERROR_MESSAGE),
        )


def load_gateway_config() -> GatewayConfig:
    """
    Load gateway configuration from multiple sources.

    Priority (highest to lowest):
    1. Environment variables
    2. ~/.clawd/config.yaml (agent and cron sections)
    3. ~/.clawd/gateway.json
    4. Defaults
    """
    config = GatewayConfig()
    home = get_clawd_home()

    gateway_config_path = home / "gateway.json"
    if gateway_config_path.exists():
        try:
            with open(gateway_config_path, "r", encoding="utf-8") as f:
                config = GatewayConfig.from_dict(json.load(f))
        except Exception as e:
            logger.warning("Failed to load %s: %s", gateway_config_path, e)

    # config.yaml is the user-facing file; it wins for agent/cron settings.
    try:
        import yaml
        config_yaml_path = home / "config.yaml"
        if config_yaml_path.exists():
            with open(config_yaml_path, encoding="utf-8") as f:
                yaml_cfg = yaml.safe_load(f) or {}
            agent_cfg = yaml_cfg.get("agent")
            if isinstance(agent_cfg, dict):
                merged = {**config.agent.to_dict(), "api_key": config.agent.api_key, **agent_cfg}
                config.agent = AgentSettings.from_dict(merged)
            cron_cfg = yaml_cfg.get("cron")
            if isinstance(cron_cfg, dict) and "poll_interval" in cron_cfg:
                config.cron_poll_interval = cron_cfg["poll_interval"]
            if yaml_cfg.get("agent_id"):
                config.agent_id = str(yaml_cfg["agent_id"])
    except Exception as e:
        logger.warning("Failed to read config.yaml: %s", e)

    _apply_env_overrides(config)

    # --- Validate loaded values ---
    try:
        interval = int(config.cron_poll_interval)
    except (TypeError, ValueError):
        interval = 0
    if interval <= 0:
        logger.warning(
            "Invalid cron_poll_interval=%s (must be positive). Using default %s.",
            config.cron_poll_interval, DEFAULT_POLL_INTERVAL,
        )
        interval = DEFAULT_POLL_INTERVAL
    config.cron_poll_interval = interval

    if not config.agent_id.strip():
        logger.warning("Empty agent_id. Using default 'clawd'.")
        config.agent_id = "clawd"

    telegram = config.platforms.get(Platform.TELEGRAM)
    if telegram and telegram.enabled and not (telegram.token or "").strip():
        logger.warning(
            "telegram is enabled but TELEGRAM_BOT_TOKEN is empty. "
            "The adapter will likely fail to connect."
        )

    signal_cfg = config.platforms.get(Platform.SIGNAL)
    if signal_cfg and signal_cfg.enabled and not signal_cfg.extra.get("phone_number"):
        logger.warning(
            "signal is enabled but SIGNAL_PHONE_NUMBER is not set. "
            "The adapter will fail to start."
        )

    return config


def _ensure_platform(config: GatewayConfig, platform: Platform) -> PlatformConfig:
    if platform not in config.platforms:
        config.platforms[platform] = PlatformConfig()
    return config.platforms[platform]


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("true", "1", "yes")


def _apply_env_overrides(config: GatewayConfig) -> None:
    """Apply environment variable overrides to config."""

    agent_id = os.getenv("CLAWD_AGENT_ID")
    if agent_id:
        config.agent_id = agent_id

    # Telegram
    telegram_token = os.getenv("TELEGRAM_BOT_TOKEN")
    if telegram_token:
        pconfig = _ensure_platform(config, Platform.TELEGRAM)
        pconfig.enabled = True
        pconfig.token = telegram_token

    # WhatsApp (bridge process, no token)
    if _env_flag("WHATSAPP_ENABLED"):
        _ensure_platform(config, Platform.WHATSAPP).enabled = True
    bridge_port = os.getenv("WHATSAPP_BRIDGE_PORT")
    if bridge_port and Platform.WHATSAPP in config.platforms:
        try:
            config.platforms[Platform.WHATSAPP].extra["bridge_port"] = int(bridge_port)
        except ValueError:
            logger.warning("Invalid WHATSAPP_BRIDGE_PORT=%s", bridge_port)

    # Signal (signal-cli)
    signal_number = os.getenv("SIGNAL_PHONE_NUMBER")
    if signal_number:
        pconfig = _ensure_platform(config, Platform.SIGNAL)
        pconfig.enabled = True
        pconfig.extra["phone_number"] = signal_number
    signal_cli = os.getenv("SIGNAL_CLI_PATH")
    if signal_cli and Platform.SIGNAL in config.platforms:
        config.platforms[Platform.SIGNAL].extra["cli_path"] = signal_cli

    # iMessage (imsg CLI, macOS only)
    if _env_flag("IMESSAGE_ENABLED"):
        _ensure_platform(config, Platform.IMESSAGE).enabled = True
    imsg_cli = os.getenv("IMESSAGE_CLI_PATH")
    if imsg_cli and Platform.IMESSAGE in config.platforms:
        config.platforms[Platform.IMESSAGE].extra["cli_path"] = imsg_cli

    # Home channels and allowlists share a naming scheme across platforms
    for platform, pconfig in config.platforms.items():
        prefix = platform.value.upper()
        home = os.getenv(f"{prefix}_HOME_CHANNEL")
        if home:
            pconfig.home_channel = HomeChannel(
                platform=platform,
                chat_id=home,
                name=os.getenv(f"{prefix}_HOME_CHANNEL_NAME", "Home"),
            )
        allowed = os.getenv(f"{prefix}_ALLOWED_USERS", "").strip()
        if allowed:
            pconfig.allowed_senders = [u.strip() for u in allowed.split(",") if u.strip()]

    # Agent engine
    model = os.getenv("CLAWD_MODEL")
    if model:
        config.agent.model = model
    api_key = os.getenv("OPENAI_API_KEY")
    if api_key:
        config.agent.api_key = api_key
    base_url = os.getenv("OPENAI_BASE_URL")
    if base_url:
        config.agent.base_url = base_url

    interval = os.getenv("CLAWD_CRON_INTERVAL")
    if interval:
        try:
            config.cron_poll_interval = int(interval)
        except ValueError:
            logger.warning("Invalid CLAWD_CRON_INTERVAL=%s", interval)

