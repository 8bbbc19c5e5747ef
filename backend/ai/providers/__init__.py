from ai.providers.base import AIProvider
from ai.providers.openai_provider import OpenAIProvider

PROVIDERS: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
}

# Model ids a provider accepts; anything else falls back to the provider default.
MODEL_PREFIXES: dict[str, tuple[str, ...]] = {
    "openai": ("gpt-", "chatgpt-", "o1", "o3", "o4"),
}


def _looks_like_provider_model(provider_name: str, model_id: str | None) -> bool:
    m = (model_id or "").strip().lower()
    if not m:
        return False
    prefixes = MODEL_PREFIXES.get(provider_name)
    return True if prefixes is None else m.startswith(prefixes)


def get_provider(
    provider_name: str,
    api_key: str,
    model: str | None = None,
    summary_model: str | None = None,
    **options,
) -> AIProvider:
    cls = PROVIDERS.get(provider_name)
    if not cls:
        raise ValueError(f"Unknown provider: {provider_name}")

    safe_model = model if _looks_like_provider_model(provider_name, model) else None
    safe_summary = summary_model if _looks_like_provider_model(provider_name, summary_model) else None
    return cls(api_key=api_key, model=safe_model, summary_model=safe_summary, **options)


def provider_from_settings(cfg) -> AIProvider:
    """Build the coach provider from application settings."""
    return get_provider(
        cfg.AI_PROVIDER,
        cfg.OPENAI_API_KEY,
        model=cfg.AI_MODEL,
        summary_model=cfg.AI_SUMMARY_MODEL,
        base_url=cfg.OPENAI_BASE_URL,
        timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        max_output_tokens=cfg.AI_MAX_OUTPUT_TOKENS,
    )
