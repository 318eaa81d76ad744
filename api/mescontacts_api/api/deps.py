from fastapi import Depends

from mescontacts_api.core.config import Settings, get_settings
from mescontacts_api.services.lifecycle import PostLifecycle
from mescontacts_api.services.payment_gateway import StripeGateway
from mescontacts_api.services.repository import get_repository


def get_lifecycle(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> PostLifecycle:
    return PostLifecycle(repository, currency=settings.currency)


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway.from_settings(settings)
