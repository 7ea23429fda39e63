"""DNS provider clients."""

from .cloudflare import CLOUDFLARE_API_URL, CloudflareDNSProvider

__all__ = ["CloudflareDNSProvider", "CLOUDFLARE_API_URL"]
