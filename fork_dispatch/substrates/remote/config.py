"""Configuration for the remote compute substrate."""

from pydantic import BaseModel, SecretStr


class RemoteConfig(BaseModel):
    """Configuration for the remote compute substrate."""

    api_base_url: str
    function_name: str
    token: SecretStr
    # Where bundles are uploaded with HTTP PUT; None disables bundling
    bundle_store_url: str | None = None
    request_timeout_margin: float = 60.0
