from typing import Dict

from blesspay.cache import TTLCache
from blesspay.config import Settings
from blesspay.gateways.base import ProviderGateway
from blesspay.gateways.mpesa import MpesaGateway
from blesspay.gateways.paystack import PaystackGateway

__all__ = ["ProviderGateway", "MpesaGateway", "PaystackGateway", "build_gateways"]


def build_gateways(settings: Settings, session=None, token_cache: TTLCache = None) -> Dict[str, ProviderGateway]:
    common = dict(
        timeout=settings.provider_timeout,
        max_attempts=settings.initiate_max_attempts,
        backoff_base=settings.initiate_backoff_base,
        backoff_max=settings.initiate_backoff_max,
        session=session,
    )
    gateways = [
        MpesaGateway(
            consumer_key=settings.mpesa_consumer_key,
            consumer_secret=settings.mpesa_consumer_secret,
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey,
            callback_url=settings.mpesa_callback_url,
            account_reference=settings.mpesa_account_reference,
            token_cache=token_cache,
            base_url=settings.mpesa_base_url,
            webhook_secret=settings.mpesa_callback_secret,
            **common,
        ),
        PaystackGateway(
            secret_key=settings.paystack_secret_key,
            currency=settings.paystack_currency,
            callback_url=settings.paystack_callback_url,
            base_url=settings.paystack_base_url,
            webhook_secret=settings.paystack_webhook_secret,
            **common,
        ),
    ]
    return {gateway.name: gateway for gateway in gateways}
