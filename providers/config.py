import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class DigitalOceanConfig:
    api_url: str = os.getenv("DO_API_URL", "https://api.digitalocean.com")
    api_token: str = os.getenv("DO_API_TOKEN", "")

    timeout: float = float(os.getenv("DO_TIMEOUT", "20.0"))
    max_connections: int = int(os.getenv("DO_MAX_CONNECTIONS", "50"))
    max_keepalive: int = int(os.getenv("DO_MAX_KEEPALIVE", "10"))

    retry_count: int = int(os.getenv("DO_RETRY_COUNT", "3"))
    retry_delay: float = float(os.getenv("DO_RETRY_DELAY", "1.0"))

    # gauge lookback, and the traffic window when a caller does not pass one
    sample_window_seconds: int = int(os.getenv("DO_SAMPLE_WINDOW_SECONDS", "300"))


@dataclass
class PayPalConfig:
    api_url: str = os.getenv("PAYPAL_API_URL", "https://api-m.paypal.com")
    client_id: str = os.getenv("PAYPAL_CLIENT_ID", "")
    client_secret: str = os.getenv("PAYPAL_CLIENT_SECRET", "")

    timeout: float = float(os.getenv("PAYPAL_TIMEOUT", "30.0"))

    @property
    def orders_url(self) -> str:
        return "/v2/checkout/orders"

    @property
    def token_url(self) -> str:
        return "/v1/oauth2/token"


digitalocean_config = DigitalOceanConfig()
paypal_config = PayPalConfig()
