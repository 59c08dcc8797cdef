# services/ado/__init__.py
from .base import AdoClient
from .rest_client import AdoRestClient
from services.constants import ADO_PROVIDER

def get_ado_client() -> AdoClient:
    """
    Factory function to get the work-tracking system client.
    Only the REST client exists for now; the provider switch keeps the seam for others.
    """
    provider = ADO_PROVIDER.lower()

    if provider == "rest":
        return AdoRestClient()
    else:
        raise ValueError(f"Unknown ADO_PROVIDER={provider}")
