from __future__ import annotations

from dataclasses import dataclass
import os


POLYGON_USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
SIZING_POLICIES = ("exact", "proportional", "paper_match")


@dataclass(frozen=True)
class BotConfig:
    mode: str
    data_api_url: str
    gamma_url: str
    clob_url: str
    rpc_urls: tuple[str, ...]
    usdc_address: str
    database_path: str
    api_timeout_seconds: float
    rpc_timeout_seconds: float

    target_address: str
    target_proxy_address: str
    bot_address: str

    poll_interval_seconds: float
    execution_poll_seconds: float
    resolution_interval_seconds: float
    block_poll_seconds: float
    activity_page_size: int
    activity_max_pages: int
    activity_types: tuple[str, ...]
    too_old_minutes: int
    enable_chain_listener: bool

    retry_limit: int
    trade_scale: float
    max_trade_amount: float
    max_price_diff: float
    sizing_policy: str
    title_filter: str
    paper_bankroll_usdc: float
    balance_ttl_seconds: float

    rpc_race_width: int
    rpc_cooldown_seconds: float
    dedup_ttl_seconds: float

    poly_private_key: str
    poly_chain_id: int
    poly_signature_type: int | None

    log_level: str

    @property
    def live_mode(self) -> bool:
        return self.mode.lower() == "live"

    @property
    def paper_mode(self) -> bool:
        return not self.live_mode

    @property
    def filter_enabled(self) -> bool:
        return bool(self.title_filter.strip())


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _parse_rpc_urls(raw: str) -> tuple[str, ...]:
    urls = [part.strip() for part in raw.split(",")]
    return tuple(url for url in urls if url)


def _parse_title_filter(raw: str) -> str:
    # Everything after '#' is an inline comment in .env files.
    return raw.split("#", 1)[0].strip()


def _resolve_sizing_policy() -> str:
    explicit = os.getenv("SIZING_POLICY", "").strip().lower()
    if explicit in SIZING_POLICIES:
        return explicit
    if os.getenv("TRADE_EXACT", "").strip().startswith("1"):
        return "exact"
    return "proportional"


def load_config() -> BotConfig:
    raw_signature_type = os.getenv("POLY_SIGNATURE_TYPE", "").strip()
    parsed_signature_type: int | None = None
    if raw_signature_type:
        try:
            parsed_signature_type = int(raw_signature_type)
        except ValueError:
            parsed_signature_type = None

    mode = os.getenv("BOT_MODE", "paper").strip().lower()
    return BotConfig(
        mode=mode,
        data_api_url="https://data-api.polymarket.com",
        gamma_url="https://gamma-api.polymarket.com",
        clob_url=os.getenv("CLOB_HTTP_URL", "https://clob.polymarket.com").strip(),
        rpc_urls=_parse_rpc_urls(os.getenv("RPC_URL", "https://polygon-rpc.com")),
        usdc_address=os.getenv("USDC_CONTRACT_ADDRESS", POLYGON_USDC_ADDRESS).strip(),
        database_path=os.getenv("BOT_DB_PATH", "data/copytrade.db"),
        api_timeout_seconds=5.0,
        rpc_timeout_seconds=8.0,
        target_address=os.getenv("USER_ADDRESS", "").strip().lower(),
        target_proxy_address=os.getenv("TARGET_PROXY_ADDRESS", "").strip().lower(),
        bot_address=os.getenv("PROXY_WALLET", "").strip().lower(),
        poll_interval_seconds=max(0.2, _env_float("FETCH_INTERVAL", 1.0)),
        execution_poll_seconds=2.0,
        resolution_interval_seconds=60.0,
        block_poll_seconds=1.0,
        activity_page_size=50,
        activity_max_pages=10,
        activity_types=("TRADE", "MERGE"),
        too_old_minutes=max(1, _env_int("TOO_OLD_TIMESTAMP", 24)),
        enable_chain_listener=_env_flag("ENABLE_CHAIN_LISTENER"),
        retry_limit=max(1, _env_int("RETRY_LIMIT", 3)),
        trade_scale=_env_float("TRADE_SCALE", 1.0),
        max_trade_amount=_env_float("MAX_TRADE_AMOUNT", 10.0),
        max_price_diff=_env_float("MAX_PRICE_DIFF", 0.05),
        sizing_policy=_resolve_sizing_policy(),
        title_filter=_parse_title_filter(os.getenv("TITLE_FILTER", "")),
        paper_bankroll_usdc=_env_float("PAPER_BANKROLL", 1000.0),
        balance_ttl_seconds=30.0,
        rpc_race_width=5,
        rpc_cooldown_seconds=60.0,
        dedup_ttl_seconds=60.0,
        poly_private_key=os.getenv("POLY_PRIVATE_KEY", os.getenv("PRIVATE_KEY", "")),
        poly_chain_id=137,
        poly_signature_type=parsed_signature_type,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def validate_config(config: BotConfig) -> list[str]:
    problems: list[str] = []
    if not config.target_address:
        problems.append("USER_ADDRESS is not defined")
    if not config.rpc_urls:
        problems.append("RPC_URL is not defined")
    if config.sizing_policy not in SIZING_POLICIES:
        problems.append(f"unsupported sizing policy {config.sizing_policy!r}")
    if config.live_mode:
        if not config.bot_address:
            problems.append("PROXY_WALLET is not defined")
        if not config.poly_private_key:
            problems.append("PRIVATE_KEY is not defined")
        if config.sizing_policy == "paper_match":
            problems.append("paper_match sizing is only available in paper mode")
    return problems
