from .digitalocean import DigitalOceanClient, get_compute_client, close_compute_client
from .paypal import PayPalClient, get_payment_client, close_payment_client
from .config import digitalocean_config, paypal_config

__all__ = [
    "DigitalOceanClient",
    "get_compute_client",
    "close_compute_client",
    "PayPalClient",
    "get_payment_client",
    "close_payment_client",
    "digitalocean_config",
    "paypal_config",
]
