"""
MTF Sentinel Trader - Configuration
Loads environment variables and provides system-wide configuration.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Central configuration for MTF Sentinel Trader."""

    # ==========================================================================
    # API CREDENTIALS
    # ==========================================================================

    # Lemonn trading API (market data account)
    LEMON_BASE_URL: str = os.getenv("LEMON_BASE_URL", "https://cs-prod.lemonn.co.in")
    LEMON_CLIENT_ID: str = os.getenv("LEMON_CLIENT_ID", "")
    LEMON_API_KEY: str = os.getenv("LEMON_API_KEY", "")
    LEMON_PRIVATE_KEY: str = os.getenv("LEMON_PRIVATE_KEY", "")

    # WhatsApp Cloud API
    WHATSAPP_API_URL: str = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v22.0")
    WHATSAPP_PHONE_NUMBER_ID: str = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
    WHATSAPP_ACCESS_TOKEN: str = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
    WHATSAPP_TEMPLATE: str = os.getenv("WHATSAPP_TEMPLATE", "portfolio_update_earnings")

    # Shared secret for the cron trigger endpoints
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")

    # ==========================================================================
    # SYSTEM SETTINGS
    # ==========================================================================

    # Mode: PAPER or LIVE. PAPER never sends orders to the broker.
    MODE: str = os.getenv("MODE", "PAPER").upper()

    # Logging level
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8080"))

    # ==========================================================================
    # BROKER
    # ==========================================================================

    BROKER_TIMEOUT_SECONDS: float = float(os.getenv("BROKER_TIMEOUT_SECONDS", "10"))
    BROKER_AUTH_RETRIES: int = int(os.getenv("BROKER_AUTH_RETRIES", "2"))
    BROKER_ORDER_RETRIES: int = int(os.getenv("BROKER_ORDER_RETRIES", "3"))
    BROKER_RETRY_BASE_DELAY: float = float(os.getenv("BROKER_RETRY_BASE_DELAY", "1.0"))
    TOKEN_REFRESH_MARGIN_MINUTES: int = 5

    # ==========================================================================
    # TRADING PARAMETERS
    # ==========================================================================

    # Used only when a user has no stop loss preference of their own
    DEFAULT_STOP_LOSS_PCT: float = float(os.getenv("DEFAULT_STOP_LOSS_PCT", "2.5"))
    FALLBACK_MARGIN_PCT: float = float(os.getenv("FALLBACK_MARGIN_PCT", "20"))
    MIN_RESISTANCE_DISTANCE_PCT: float = float(os.getenv("MIN_RESISTANCE_DISTANCE_PCT", "1.5"))

    # Entry rule RSI band (inclusive)
    RSI_MIN: float = float(os.getenv("RSI_MIN", "50"))
    RSI_MAX: float = float(os.getenv("RSI_MAX", "65"))
    MAX_HISTOGRAM_BARS: int = int(os.getenv("MAX_HISTOGRAM_BARS", "3"))

    # Support/resistance detector
    SR_PIVOT_RADIUS: int = int(os.getenv("SR_PIVOT_RADIUS", "10"))
    SR_MAX_CHANNEL_WIDTH_PCT: float = float(os.getenv("SR_MAX_CHANNEL_WIDTH_PCT", "5"))
    SR_MIN_STRENGTH: int = int(os.getenv("SR_MIN_STRENGTH", "1"))
    SR_MAX_CHANNELS: int = int(os.getenv("SR_MAX_CHANNELS", "6"))
    SR_LOOKBACK: int = int(os.getenv("SR_LOOKBACK", "290"))

    # ==========================================================================
    # SCANNING
    # ==========================================================================

    SCAN_MAX_RETRIES: int = int(os.getenv("SCAN_MAX_RETRIES", "5"))
    SCAN_BASE_DELAY_SECONDS: float = float(os.getenv("SCAN_BASE_DELAY_SECONDS", "1.0"))
    SCAN_SYMBOL_DELAY_SECONDS: float = float(os.getenv("SCAN_SYMBOL_DELAY_SECONDS", "0.2"))
    CANDLE_LOOKBACK_DAYS: int = int(os.getenv("CANDLE_LOOKBACK_DAYS", "1095"))

    MONITOR_INTERVAL_MINUTES: int = 5

    DEFAULT_UNIVERSE: list = [
        "RELIANCE", "TCS", "HDFCBANK", "INFY", "ICICIBANK",
        "HINDUNILVR", "ITC", "SBIN", "BHARTIARTL", "KOTAKBANK",
        "LT", "AXISBANK", "ASIANPAINT", "MARUTI", "SUNPHARMA",
        "TITAN", "ULTRACEMCO", "BAJFINANCE", "NESTLEIND", "WIPRO",
        "HCLTECH", "TECHM", "POWERGRID", "NTPC", "ONGC",
        "TATAMOTORS", "TATASTEEL", "JSWSTEEL", "ADANIENT", "ADANIPORTS",
        "COALINDIA", "BAJAJFINSV", "BAJAJ-AUTO", "HEROMOTOCO", "EICHERMOT",
        "DRREDDY", "CIPLA", "DIVISLAB", "APOLLOHOSP", "GRASIM",
        "BRITANNIA", "HINDALCO", "INDUSINDBK", "M&M", "SBILIFE",
        "HDFCLIFE", "TATACONSUM", "BPCL", "SHRIRAMFIN", "LTIM",
    ]

    # ==========================================================================
    # PATHS
    # ==========================================================================

    BASE_DIR: Path = Path(__file__).parent
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", str(BASE_DIR / "data" / "mtf_sentinel.db")))
    LOG_PATH: Path = Path(os.getenv("LOG_PATH", str(BASE_DIR / "logs")))

    # ==========================================================================
    # VALIDATION
    # ==========================================================================

    @classmethod
    def validate(cls) -> dict:
        """Validate that all required configuration is present."""
        issues = []

        if not cls.LEMON_CLIENT_ID:
            issues.append("LEMON_CLIENT_ID is not set")
        if not cls.LEMON_API_KEY:
            issues.append("LEMON_API_KEY is not set")
        if not cls.LEMON_PRIVATE_KEY:
            issues.append("LEMON_PRIVATE_KEY is not set")
        if not cls.CRON_SECRET:
            issues.append("CRON_SECRET is not set")
        if not cls.WHATSAPP_ACCESS_TOKEN:
            issues.append("WARNING: WHATSAPP_ACCESS_TOKEN is not set, notifications disabled")

        if cls.MODE not in ["PAPER", "LIVE"]:
            issues.append(f"Invalid MODE: {cls.MODE}. Must be PAPER or LIVE")

        if cls.RSI_MIN >= cls.RSI_MAX:
            issues.append(f"RSI_MIN ({cls.RSI_MIN}) must be below RSI_MAX ({cls.RSI_MAX})")

        if not 0 < cls.FALLBACK_MARGIN_PCT <= 100:
            issues.append(f"FALLBACK_MARGIN_PCT out of range: {cls.FALLBACK_MARGIN_PCT}")

        return {
            "valid": len([i for i in issues if not i.startswith("WARNING")]) == 0,
            "issues": issues
        }

    @classmethod
    def print_config(cls) -> None:
        """Print current configuration (hiding sensitive values)."""
        print("\n" + "=" * 60)
        print("MTF SENTINEL TRADER - CONFIGURATION")
        print("=" * 60)
        print(f"Mode:            {cls.MODE}")
        print(f"Log Level:       {cls.LOG_LEVEL}")
        print("-" * 60)
        print(f"Stop Loss (def): {cls.DEFAULT_STOP_LOSS_PCT}%")
        print(f"Fallback Margin: {cls.FALLBACK_MARGIN_PCT}%")
        print(f"Resistance Gap:  {cls.MIN_RESISTANCE_DISTANCE_PCT}%")
        print(f"RSI Band:        {cls.RSI_MIN} - {cls.RSI_MAX}")
        print(f"Universe:        {len(cls.DEFAULT_UNIVERSE)} symbols")
        print("-" * 60)
        print(f"Lemon API:       {'✓ Configured' if cls.LEMON_API_KEY else '✗ Missing'}")
        print(f"WhatsApp:        {'✓ Configured' if cls.WHATSAPP_ACCESS_TOKEN else '✗ Missing'}")
        print(f"Cron Secret:     {'✓ Configured' if cls.CRON_SECRET else '✗ Missing'}")
        print("=" * 60 + "\n")
