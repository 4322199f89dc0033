"""Provider host resolution."""

from kestrel.llm.protocol import ProviderConfig


def normalize_host(host: str) -> str:
    """Prefix http:// when the host carries no scheme; otherwise return it as given."""
    host = host.strip()
    if "://" not in host:
        return f"http://{host}"
    return host


def pick_host(config: ProviderConfig, env_value: str | None = None) -> str:
    """Configured host (settings, then host env var) normalized; else the provider default."""
    configured = config.host or env_value
    if configured and configured.strip():
        return normalize_host(configured)
    return config.default_host


def join_url(host: str, path: str) -> str:
    return f"{host.rstrip('/')}/{path.lstrip('/')}"
