from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import os
import yaml


class ConfigError(ValueError):
    """Raised when the configuration cannot be used to start monitoring."""


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _env_list(value: List[str], env_key: str) -> List[str]:
    env_val = os.getenv(env_key)
    if not env_val:
        return value
    return [x.strip() for x in env_val.split(",") if x.strip()]


DEFAULT_SYMBOLS = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "ADAUSDT",
    "DOGEUSDT", "XRPUSDT", "AVAXUSDT", "DOTUSDT", "LINKUSDT",
    "LTCUSDT", "UNIUSDT", "ATOMUSDT", "FILUSDT",
]


@dataclass
class AppConfig:
    name: str = "Opportunity Monitor"
    log_level: str = "INFO"
    environment: str = "development"  # development | production


@dataclass
class ProviderConfig:
    type: str = "binance"
    base_url: str = "https://fapi.binance.com"
    rest_timeout_s: int = 10
    min_request_spacing_ms: int = 100
    kline_interval: str = "1m"
    kline_limit: int = 100
    depth_limit: int = 20
    # None = enabled outside production, disabled in production
    mock_fallback: Optional[bool] = None


@dataclass
class MonitorConfig:
    symbols: List[str] = None
    interval_s: int = 30
    batch_size: int = 5
    batch_delay_ms: int = 200


@dataclass
class SignalConfig:
    min_candles: int = 50
    atr_period: int = 20
    ema_fast: int = 20
    ema_slow: int = 50
    vol_z_window: int = 20
    vol_z_threshold: float = 1.5
    range_window: int = 20
    pullback_low: float = 0.3
    pullback_high: float = 0.7
    min_net_rr: float = 1.5
    maker_fee: float = 0.0002
    taker_fee: float = 0.0004
    slippage: float = 0.0003
    enabled_strategies: List[str] = None


@dataclass
class RiskConfig:
    min_net_rr: float = 2.0
    max_volatility: float = 0.05
    min_liquidity: float = 1_000_000.0
    min_market_condition: float = 0.5
    max_spread: float = 0.002
    max_abs_funding: float = 0.001
    abnormal_market_gate: bool = True
    reference_symbol: str = "BTCUSDT"


@dataclass
class AlertsConfig:
    cooldown_minutes: int = 30
    sweep_interval_hours: float = 6.0
    suppress_synthetic: bool = True
    fired_distance: float = 0.005
    atr_multiplier: float = 1.5


@dataclass
class SnapshotConfig:
    directory: str = "./snapshots"
    max_count: int = 100
    retention_hours: float = 24.0


@dataclass
class EmailConfig:
    api_url: str = "https://api.resend.com/emails"
    api_key: str = ""
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_email: str = "monitor@localhost"
    recipients: List[str] = None
    timeout_s: int = 15


@dataclass
class NotificationConfig:
    delay_s: float = 1.0
    queue_size: int = 100
    drain_timeout_s: float = 30.0


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class WebSocketConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 3001
    heartbeat_s: int = 30


@dataclass
class Config:
    app: AppConfig = field(default_factory=AppConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    websocket: WebSocketConfig = field(default_factory=WebSocketConfig)

    def __post_init__(self) -> None:
        if self.monitor.symbols is None:
            self.monitor.symbols = list(DEFAULT_SYMBOLS)
        self.monitor.symbols = [s.strip().upper() for s in self.monitor.symbols if s and s.strip()]
        if self.signals.enabled_strategies is None:
            self.signals.enabled_strategies = ["BREAKOUT", "PULLBACK", "TREND_FOLLOW"]
        if self.email.recipients is None:
            self.email.recipients = []
        if self.webhook.headers is None:
            self.webhook.headers = {}

    def mock_fallback_enabled(self) -> bool:
        if self.provider.mock_fallback is not None:
            return bool(self.provider.mock_fallback)
        return self.app.environment.lower() != "production"


def validate_config(cfg: Config) -> List[str]:
    errors = []
    if not cfg.monitor.symbols:
        errors.append("at least one symbol must be configured for monitoring")
    if cfg.monitor.interval_s < 1:
        errors.append("monitor.interval_s must be at least 1 second")
    if cfg.monitor.batch_size < 1:
        errors.append("monitor.batch_size must be at least 1")
    if cfg.monitor.batch_delay_ms < 0:
        errors.append("monitor.batch_delay_ms must not be negative")
    if cfg.signals.min_net_rr < 1.0:
        errors.append("signals.min_net_rr must be at least 1.0")
    if cfg.risk.min_net_rr < 1.0:
        errors.append("risk.min_net_rr must be at least 1.0")
    if cfg.signals.min_candles < max(cfg.signals.ema_slow, cfg.signals.atr_period + 2):
        errors.append("signals.min_candles must cover the slow EMA and ATR windows")
    if cfg.alerts.cooldown_minutes < 0:
        errors.append("alerts.cooldown_minutes must not be negative")
    if cfg.snapshots.max_count < 1:
        errors.append("snapshots.max_count must be at least 1")
    if cfg.snapshots.retention_hours <= 0:
        errors.append("snapshots.retention_hours must be positive")
    unknown = [s for s in cfg.signals.enabled_strategies if s not in ("BREAKOUT", "PULLBACK", "TREND_FOLLOW")]
    if unknown:
        errors.append(f"unknown strategies in signals.enabled_strategies: {', '.join(unknown)}")
    return errors


def _apply_env(cfg: Config) -> None:
    # env overrides (useful on servers)
    cfg.app.environment = _env_override(cfg.app.environment, "APP_ENV")
    cfg.app.log_level = _env_override(cfg.app.log_level, "LOG_LEVEL")
    cfg.monitor.symbols = [s.upper() for s in _env_list(cfg.monitor.symbols, "SYMBOLS")]
    cfg.monitor.interval_s = _env_override(cfg.monitor.interval_s, "MONITOR_INTERVAL_SECONDS")
    cfg.risk.min_net_rr = _env_override(cfg.risk.min_net_rr, "MIN_NET_RR")
    cfg.alerts.cooldown_minutes = _env_override(cfg.alerts.cooldown_minutes, "ALERT_COOLDOWN_MINUTES")

    cfg.email.api_key = _env_override(cfg.email.api_key, "EMAIL_API_KEY")
    cfg.email.smtp_host = _env_override(cfg.email.smtp_host, "SMTP_HOST")
    cfg.email.smtp_port = _env_override(cfg.email.smtp_port, "SMTP_PORT")
    cfg.email.smtp_user = _env_override(cfg.email.smtp_user, "SMTP_USER")
    cfg.email.smtp_password = _env_override(cfg.email.smtp_password, "SMTP_PASS")
    cfg.email.from_email = _env_override(cfg.email.from_email, "FROM_EMAIL")
    cfg.email.recipients = _env_list(cfg.email.recipients, "TO_EMAIL")

    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    if os.getenv("WEBHOOK_URL"):
        cfg.webhook.enabled = True


def build_config(raw: Dict[str, Any]) -> Config:
    raw = raw or {}
    try:
        cfg = Config(
            app=AppConfig(**(raw.get("app") or {})),
            provider=ProviderConfig(**(raw.get("provider") or {})),
            monitor=MonitorConfig(**(raw.get("monitor") or {})),
            signals=SignalConfig(**(raw.get("signals") or {})),
            risk=RiskConfig(**(raw.get("risk") or {})),
            alerts=AlertsConfig(**(raw.get("alerts") or {})),
            snapshots=SnapshotConfig(**(raw.get("snapshots") or {})),
            email=EmailConfig(**(raw.get("email") or {})),
            notifications=NotificationConfig(**(raw.get("notifications") or {})),
            webhook=WebhookConfig(**(raw.get("webhook") or {})),
            websocket=WebSocketConfig(**(raw.get("websocket") or {})),
        )
    except TypeError as e:
        raise ConfigError(f"invalid configuration key: {e}") from e
    _apply_env(cfg)
    return cfg


def load_config(path: Optional[str] = None) -> Config:
    raw: Dict[str, Any] = {}
    if path:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    cfg = build_config(raw)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("configuration errors: " + "; ".join(errors))
    return cfg
