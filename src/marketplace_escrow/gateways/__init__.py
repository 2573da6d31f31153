"""Payment gateway clients and factory.

One client today:
    - NeeroGatewayClient:  Neero REST API over httpx

The GatewayFactory resolves a gateway name (the ``{gateway}`` segment of the
webhook route, or the ``payment_gateway`` column of a Payment) to a client.
"""

from marketplace_escrow.domain.enums import GatewayName
from marketplace_escrow.domain.exceptions import UnknownGatewayError
from marketplace_escrow.domain.gateway_protocol import PaymentGateway
from marketplace_escrow.gateways.neero import NeeroGatewayClient


class GatewayFactory:
    """Factory that creates the gateway client registered under a name.

    Usage:
        gateway = GatewayFactory.create("neero")
        result = await gateway.initiate(request)
    """

    _registry: dict[str, type] = {
        GatewayName.NEERO.value: NeeroGatewayClient,
    }

    @classmethod
    def create(cls, name: str) -> PaymentGateway:
        """Create a gateway client by name.

        Raises:
            UnknownGatewayError: If no client is registered under ``name``.
        """
        gateway_class = cls._registry.get((name or "").lower())
        if gateway_class is None:
            raise UnknownGatewayError(name, cls.get_supported_gateways())
        return gateway_class()

    @classmethod
    def get_supported_gateways(cls) -> list[str]:
        """Return the list of supported gateway names."""
        return list(cls._registry.keys())


__all__ = [
    "GatewayFactory",
    "NeeroGatewayClient",
    "PaymentGateway",
]
