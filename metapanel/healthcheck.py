"""Chat endpoint health check: is Ollama up, and are the panel's models pulled?"""

import logging

import httpx

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 5.0


def tags_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/tags"


def _installed(model: str, tags: set[str]) -> bool:
    return model in tags or f"{model}:latest" in tags


async def fetch_installed_models(client: httpx.AsyncClient, base_url: str) -> set[str]:
    response = await client.get(tags_url(base_url), timeout=_TIMEOUT_SEC)
    response.raise_for_status()
    data = response.json()
    entries = data.get("models", []) if isinstance(data, dict) else []
    return {str(m.get("name", "")) for m in entries if isinstance(m, dict)}


async def run_health_checks(
    base_url: str,
    models: list[str],
    client: httpx.AsyncClient | None = None,
) -> dict[str, tuple[bool, str]]:
    """Check every model the panel will use.

    Returns:
        Dict mapping model -> (ok, error_message).
        error_message is "" when ok is True.
    """
    if not models:
        return {}

    owns_client = client is None
    client = client or httpx.AsyncClient()
    try:
        tags = await fetch_installed_models(client, base_url)
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("Health check failed for %s: %s", base_url, exc)
        return {m: (False, f"Endpoint unreachable: {exc}") for m in models}
    finally:
        if owns_client:
            await client.aclose()

    return {
        m: (True, "") if _installed(m, tags) else (False, f"Model not installed: {m}")
        for m in models
    }
