import logging
import os
from functools import lru_cache

from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logging.getLogger("azure.identity").setLevel(logging.WARNING)


def _using_managed_identity() -> bool:
    """Check if running with Managed Identity (Azure hosted environment)."""
    return bool(
        os.getenv("AZURE_CLIENT_ID") or os.getenv("MSI_ENDPOINT") or os.getenv("IDENTITY_ENDPOINT")
    )


def _is_local_dev() -> bool:
    return os.getenv("ENVIRONMENT", "").lower() not in ("prod", "production", "staging")


@lru_cache(maxsize=1)
def get_credential():
    """
    Credential used for AAD-authenticated Azure Cache for Redis.

    - Managed Identity when AZURE_CLIENT_ID/MSI_ENDPOINT/IDENTITY_ENDPOINT is set
    - Local dev: environment + CLI credential (`az login`)
    - Production: environment + managed identity only
    """
    if _using_managed_identity():
        return ManagedIdentityCredential(client_id=os.getenv("AZURE_CLIENT_ID"))

    local = _is_local_dev()
    return DefaultAzureCredential(
        exclude_environment_credential=False,
        exclude_managed_identity_credential=local,
        exclude_workload_identity_credential=True,
        exclude_shared_token_cache_credential=True,
        exclude_visual_studio_code_credential=True,
        exclude_cli_credential=not local,
        exclude_powershell_credential=True,
        exclude_interactive_browser_credential=True,
    )
