"""Renderers for the configuration files the terminal reads at startup."""

from typing import Iterable, Tuple

from core.config.settings import InstanceSettings
from .models import PluginConfig, TerminalCredentials

LOGIN_CONFIG_NAME = "terminal.ini"
AUTOSTART_CONFIG_NAME = "experts.ini"

# Plugin parameters not driven by the account's lot policy
FIXED_PLUGIN_PARAMETERS = (
    ("CopyStopLoss", 1),
    ("CopyTakeProfit", 1),
    ("InvertTrades", 0),
    ("SlippagePts", 30),
    ("CloseOnMasterClose", 1),
)


def _section(name: str, pairs: Iterable[Tuple[str, object]]) -> str:
    lines = [f"[{name}]"]
    lines.extend(f"{key}={value}" for key, value in pairs)
    return "\n".join(lines)


def render_login_config(credentials: TerminalCredentials) -> str:
    return _section("Common", [
        ("Login", credentials.login),
        ("Password", credentials.password.get_secret_value()),
        ("Server", credentials.server),
        ("AutoLogin", 1),
        ("NewsEnabled", 0),
    ])


def render_plugin_parameters(config: PluginConfig, settings: InstanceSettings) -> str:
    pairs = [
        ("Mode", config.role.plugin_mode),
        ("ServerURL", config.server_url or settings.publish_base_url),
        ("ChannelCode", config.channel_code),
        ("MasterKey", config.master_key),
        ("LotMode", config.lot_mode.plugin_value),
        ("FixedLot", config.fixed_lot),
        ("RiskPercent", config.risk_pct),
        ("MasterBalance", config.master_balance),
        *FIXED_PLUGIN_PARAMETERS,
        ("YourName", config.user_name),
        ("MagicNumber", settings.plugin_magic_number),
        ("PollSeconds", settings.plugin_poll_seconds),
    ]
    return _section("expert", pairs)


def render_autostart_config(settings: InstanceSettings) -> str:
    experts = _section("Experts", [
        ("AllowLiveTrading", 1),
        ("AllowDllImport", 0),
        ("Enabled", 1),
        ("Account", 0),
    ])
    chart = _section("Chart0", [
        ("Symbol", settings.chart_symbol),
        ("Period", settings.chart_period),
        ("Expert", settings.plugin_name),
        ("ExpertParameters", f"{settings.plugin_name}.set"),
    ])
    return f"{experts}\n\n{chart}"
